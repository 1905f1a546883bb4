"""Library Lending - Core Application Package

This package contains the lending service modules including:
- API endpoints (api.py)
- Library facade and catalog logic (library.py)
- CLI interface (main.py)
- Data models (book.py, user.py, loan.py)
- Database layer (database.py) and entity store (store.py)
- Loan lifecycle, availability, overdue, integrity and statistics services (services/)
"""

__version__ = "1.0.0"
