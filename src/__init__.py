"""Statement Intelligence.

Extracts transactions from bank and card statements (PDF, scans, plain
text), detects the issuing source, classifies merchants into spending
categories, and learns from user corrections through a shared SQLite
learning store.
"""
