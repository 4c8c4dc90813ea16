from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from creastudio.config.config import config
from creastudio.storage.local_storage import LocalStorage
from creastudio.storage.stores import ImageCacheStore, ProjectStore, UserStore, VoiceStore


@dataclass
class StudioStorage:
    """
    Everything the studio keeps between sessions.

    One LocalStorage file backs all repositories; each repository owns its keys.
    """

    storage: LocalStorage
    projects: ProjectStore
    voices: VoiceStore
    users: UserStore
    images: ImageCacheStore

    @classmethod
    def open(cls, db_path: Optional[os.PathLike] = None) -> "StudioStorage":
        path = Path(db_path) if db_path is not None else Path(config["storage_path"])
        storage = LocalStorage.open(path)
        return cls(
            storage=storage,
            projects=ProjectStore(storage),
            voices=VoiceStore(storage),
            users=UserStore(storage),
            images=ImageCacheStore(storage),
        )

    @property
    def db_path(self) -> Path:
        return self.storage.db_path

    def close(self) -> None:
        self.storage.close()
