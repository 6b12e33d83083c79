"""
Expense Tracker auth REST API.
"""
