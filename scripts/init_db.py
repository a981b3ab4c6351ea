#!/usr/bin/env python3
"""Create all database tables."""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from todoapp.config import Settings
from todoapp.db import Base, make_engine
from todoapp import models  # noqa: F401 – register models

if __name__ == "__main__":
    engine = make_engine(Settings().DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    print(f"Database created at {engine.url}")
