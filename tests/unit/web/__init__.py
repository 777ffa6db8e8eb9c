"""Route tests for the CareRoster JSON API.

Each route module has a corresponding test file. Requests go through the full
app (middleware and error handlers) with the database dependency pointed at
an in-memory SQLite database.
"""
