"""
Pytest root configuration.
Switches settings to testing mode before any application module is imported,
so the app engine is an in-memory SQLite database.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
