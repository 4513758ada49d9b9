"""
Finance: chart of accounts, transactions, invoices, expenses, bank statement import
and bank reconciliation.
"""
