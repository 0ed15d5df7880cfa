from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from traitgrant.core.config import AppPaths
from traitgrant.core.files import ensure_directory
from traitgrant.infrastructure.db.sqlite import SCHEMA_PATH, initialize_schema


@dataclass(slots=True)
class InitResult:
    paths_created: list[Path]
    db_path: Path


class ProjectService:
    def __init__(self, paths: AppPaths) -> None:
        self.paths = paths

    def init_project(self) -> InitResult:
        paths_created: list[Path] = []

        if not self.paths.data_dir.exists():
            paths_created.append(self.paths.data_dir)
        ensure_directory(self.paths.data_dir)

        initialize_schema(self.paths.db_path, SCHEMA_PATH)

        return InitResult(paths_created=paths_created, db_path=self.paths.db_path)

    def is_initialized(self) -> bool:
        return self.paths.db_path.exists()
