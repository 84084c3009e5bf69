"""Application configuration builder."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .core.config import PublisherSettings
from .db.db_init import build_engine, init_db
from .exceptions import ConfigurationError
from .services.projects import InMemoryProjectService


@dataclass(slots=True)
class AppConfig:
    settings: PublisherSettings
    work_root: Path
    database_url: str
    engine: Engine
    session_factory: sessionmaker[Session]
    projects: InMemoryProjectService


def load_projects(path: Path | None) -> InMemoryProjectService:
    """Read project definitions from a JSON file (empty service without one)."""

    if path is None:
        return InMemoryProjectService()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Projects file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Projects file {path} is not valid JSON: {exc}") from exc
    return InMemoryProjectService.from_mapping(raw)


def load_config(settings: PublisherSettings | None = None, *, env_file: str | None = None) -> AppConfig:
    """Load configuration from ``.env`` and ``PUBLISHER_*`` variables."""

    load_dotenv(env_file)
    settings = settings or PublisherSettings()

    work_root = Path(settings.work_root)
    work_root.mkdir(parents=True, exist_ok=True)

    engine = build_engine(settings.database_url)
    session_factory: sessionmaker[Session] = sessionmaker(bind=engine, expire_on_commit=False)
    init_db(engine)

    return AppConfig(
        settings=settings,
        work_root=work_root,
        database_url=settings.database_url,
        engine=engine,
        session_factory=session_factory,
        projects=load_projects(settings.projects_file),
    )


__all__ = ["AppConfig", "load_config", "load_projects"]
