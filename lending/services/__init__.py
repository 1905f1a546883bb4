"""Library Lending - Services Package

This package contains the lending core services:
- Loan lifecycle manager (create, return, delete, update)
- Availability synchronizer
- Overdue classifier
- Integrity guard for destructive catalog operations
- Read-only statistics aggregation
"""
