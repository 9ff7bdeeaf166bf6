from __future__ import annotations

import os
import shutil
from pathlib import Path

import pytest

# Set env before any receipt_tracker imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.receipt_tracker_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("GEMINI_API_KEY", "test-key")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import receipt_tracker.core.storage as storage_mod
    import receipt_tracker.models  # noqa: F401
    from receipt_tracker.core.db import engine
    from receipt_tracker.core.models import Base

    storage_mod._storage = None
    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield
