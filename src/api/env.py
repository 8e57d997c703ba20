"""
Load ``.env`` from the project root once, before any settings are read.

Imported first by the app entry points; variables already set in the
environment win over the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

project_root = Path(__file__).resolve().parents[2]


def load_env(env_file: Optional[os.PathLike] = None) -> bool:
    path = Path(env_file) if env_file is not None else project_root / ".env"
    if not path.exists():
        return False
    return load_dotenv(path)


load_env()
