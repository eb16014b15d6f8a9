from __future__ import annotations

import os

from alembic import command
from alembic.config import Config

ALEMBIC_CONFIG = os.getenv("ALEMBIC_CONFIG", "alembic.ini")


def build_config(path: str = ALEMBIC_CONFIG) -> Config:
    return Config(path)


def run_upgrade_head(path: str = ALEMBIC_CONFIG) -> None:
    command.upgrade(build_config(path), "head")


if __name__ == "__main__":
    run_upgrade_head()
