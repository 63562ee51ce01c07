"""Deal module -- persistence models, schemas, repositories and risk scoring.

Provides SQLAlchemy models (CRM credentials, synced deals, risk policies),
Pydantic schemas for every value flowing through the sync engine,
async repositories, and the deterministic RiskScorer.
"""
