"""
Create all tables from the SQLAlchemy models.
Handy for local development and throwaway databases; production uses `alembic upgrade head`.
"""
from app.database import engine, Base
from app import models  # noqa: F401 - register all models with Base

Base.metadata.create_all(bind=engine)
print("Tables created (or already exist).")
