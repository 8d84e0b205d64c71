"""
Fiscalismia - Personal Finance Backend

FastAPI service exposing the Fiscalismia REST API and orchestrating the
serverless raw data ETL that refreshes the PostgreSQL schema.
"""

__version__ = "0.1.0"
