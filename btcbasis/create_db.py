#!/usr/bin/env python
"""
create_db.py

Initializes the SQLite database for the cost basis service by calling
'create_tables()' from 'btcbasis/database.py'. Creates companies, purchases,
transactions, transaction_lots and exchange_rates if they are missing;
existing rows are never touched.

Usage:
    python btcbasis/create_db.py
"""

import sys
import os

# Project root is one level above this file's directory.
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from btcbasis.database import DATABASE_URL, create_tables

if __name__ == "__main__":
    try:
        print(f"Creating database tables at {DATABASE_URL} ...")
        create_tables()
        print("Database tables created successfully.")
    except Exception as e:
        print("Error creating database tables:", e)
        sys.exit(1)
