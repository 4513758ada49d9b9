"""
HR: departments (nested, with managers and budgets) and employee records.
"""
