from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, List, Optional

from passlib.context import CryptContext

from creastudio.storage.local_storage import LocalStorage
from creastudio.storage.models import (
    PROJECT_STATUSES,
    BrandVoice,
    ScriptDocuments,
    ScriptProject,
    UserAccount,
    as_epoch_ms,
)
from creastudio.tools import messages
from creastudio.tools.base import setup_logger

logger = setup_logger(__name__)

SCRIPTS_KEY = "my-ai-studio-scripts"
LEGACY_BOOKS_KEY = "my-ai-studio-books"
BRAND_VOICES_KEY = "my-ai-studio-brand-voices"
USERS_KEY = "studio-users"
CURRENT_USER_KEY = "currentUser"

AVATAR_PHOTO_KEY = "my-ai-avatar-photo"
HEADSHOT_SELFIES_KEY = "my-ai-headshot-generator-selfies"
PHOTO_STUDIO_SELFIES_KEY = "my-ai-photo-studio-selfies"


class StorageValidationError(ValueError):
    pass


class NotFoundError(KeyError):
    pass


class DuplicateUserError(StorageValidationError):
    pass


class InvalidLoginError(StorageValidationError):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return uuid.uuid4().hex


class _JSONCollection:
    """A JSON list stored under one key, re-read and re-written as a whole."""

    key: str = ""

    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def _load(self, key: Optional[str] = None) -> List[Dict[str, Any]]:
        key = key or self.key
        raw = self.storage.get_item(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt JSON under {key!r}, treating as empty: {e}")
            return []
        if not isinstance(data, list):
            logger.error(f"Expected a list under {key!r}, got {type(data).__name__}; treating as empty")
            return []
        return [d for d in data if isinstance(d, dict)]

    def _dump(self, records: List[Dict[str, Any]], key: Optional[str] = None) -> None:
        self.storage.set_item(key or self.key, json.dumps(records, ensure_ascii=False))


# --- script projects ---
class ProjectStore(_JSONCollection):
    key = SCRIPTS_KEY

    def migrate_legacy(self) -> int:
        """Convert saved books from the older library format. Returns how many were moved."""
        raw = self.storage.get_item(LEGACY_BOOKS_KEY)
        if raw is None:
            return 0
        try:
            books = json.loads(raw)
        except json.JSONDecodeError as e:
            # left in place so the books can still be recovered by hand
            logger.error(f"Legacy books under {LEGACY_BOOKS_KEY!r} are unreadable, not migrating: {e}")
            return 0
        if not isinstance(books, list):
            logger.error(f"Expected a list under {LEGACY_BOOKS_KEY!r}, got {type(books).__name__}; not migrating")
            return 0
        projects = {p["id"]: p for p in self._load() if "id" in p}
        moved = 0
        for book in books:
            if not isinstance(book, dict):
                logger.warning(f"Skipping legacy book that is not an object: {book!r}")
                continue
            book_id = book.get("id")
            project = ScriptProject(
                id=str(book_id) if book_id not in (None, "") else _new_id(),
                title=book.get("title") or "",
                created_at=as_epoch_ms(book.get("createdAt")),
                status="current",
                documents=ScriptDocuments(script=book.get("content") or ""),
            )
            projects[project.id] = project.to_dict()
            moved += 1
        self._dump(list(projects.values()))
        self.storage.remove_item(LEGACY_BOOKS_KEY)
        logger.info(f"Migrated {moved} legacy books into {SCRIPTS_KEY}")
        return moved

    def _projects(self) -> List[ScriptProject]:
        self.migrate_legacy()
        projects = []
        for record in self._load():
            try:
                projects.append(ScriptProject.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed script project {record!r}: {e}")
        return projects

    def _save(self, projects: List[ScriptProject]) -> None:
        ordered = sorted(projects, key=lambda p: p.created_at, reverse=True)
        self._dump([p.to_dict() for p in ordered])

    def list(self, status: Optional[str] = None) -> List[ScriptProject]:
        projects = sorted(self._projects(), key=lambda p: p.created_at, reverse=True)
        if status:
            projects = [p for p in projects if p.status == status]
        return projects

    def get(self, project_id: str) -> Optional[ScriptProject]:
        for project in self._projects():
            if project.id == project_id:
                return project
        return None

    def create(
        self,
        title: str,
        status: str = "current",
        documents: Optional[ScriptDocuments] = None,
        project_id: Optional[str] = None,
        created_at: Optional[int] = None,
    ) -> ScriptProject:
        if not title or not title.strip():
            raise StorageValidationError("title is required")
        _check_status(status)
        project = ScriptProject(
            id=project_id or _new_id(),
            title=title.strip(),
            created_at=created_at if created_at is not None else _now_ms(),
            status=status,
            documents=documents or ScriptDocuments(),
        )
        projects = [p for p in self._projects() if p.id != project.id]
        projects.append(project)
        self._save(projects)
        return project

    def update(self, project: ScriptProject) -> ScriptProject:
        _check_status(project.status)
        projects = self._projects()
        for i, existing in enumerate(projects):
            if existing.id == project.id:
                projects[i] = project
                self._save(projects)
                return project
        raise NotFoundError(project.id)

    def set_status(self, project_id: str, status: str) -> ScriptProject:
        project = self.get(project_id)
        if project is None:
            raise NotFoundError(project_id)
        project.status = status
        return self.update(project)

    def delete(self, project_id: str) -> bool:
        projects = self._projects()
        remaining = [p for p in projects if p.id != project_id]
        if len(remaining) == len(projects):
            return False
        self._save(remaining)
        return True


def _check_status(status: str) -> None:
    if status not in PROJECT_STATUSES:
        raise StorageValidationError(f"status must be one of {PROJECT_STATUSES}, got {status!r}")


# --- brand voices ---
class VoiceStore(_JSONCollection):
    key = BRAND_VOICES_KEY

    def list(self) -> List[BrandVoice]:
        voices = []
        for record in self._load():
            try:
                voices.append(BrandVoice.from_dict(record))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed brand voice {record!r}: {e}")
        return voices

    def get(self, voice_id: str) -> Optional[BrandVoice]:
        for voice in self.list():
            if voice.id == voice_id:
                return voice
        return None

    def save(
        self,
        name: str,
        description: str = "",
        content: str = "",
        voice_id: Optional[str] = None,
    ) -> BrandVoice:
        """Create a voice, or replace the one with `voice_id` keeping its position."""
        if not name or not name.strip():
            raise StorageValidationError("name is required")
        voice = BrandVoice(
            id=voice_id or _new_id(),
            name=name.strip(),
            description=description or "",
            content=content or "",
        )
        voices = self.list()
        for i, existing in enumerate(voices):
            if existing.id == voice.id:
                voices[i] = voice
                break
        else:
            voices.append(voice)
        self._dump([v.to_dict() for v in voices])
        return voice

    def delete(self, voice_id: str) -> bool:
        voices = self.list()
        remaining = [v for v in voices if v.id != voice_id]
        if len(remaining) == len(voices):
            return False
        self._dump([v.to_dict() for v in remaining])
        return True


# --- users ---
# Records written before hashing was introduced hold the bare password; the
# "plaintext" scheme still verifies them and marks them for re-hashing.
pwd_context = CryptContext(schemes=["bcrypt", "plaintext"], deprecated=["plaintext"])


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> bool:
    valid, _ = _verify_and_update(password, stored)
    return valid


def _verify_and_update(password: str, stored: str):
    try:
        return pwd_context.verify_and_update(password, stored)
    except ValueError as e:
        logger.warning(f"Unreadable password record: {e}")
        return False, None


class UserStore(_JSONCollection):
    key = USERS_KEY

    def _users(self) -> List[UserAccount]:
        return [UserAccount.from_dict(r) for r in self._load()]

    def _find(self, users: List[UserAccount], identifier: str) -> Optional[UserAccount]:
        ident = identifier.strip().lower()
        for user in users:
            if user.username.lower() == ident or user.email.lower() == ident:
                return user
        return None

    def register(self, username: str, email: str, password: str) -> Dict[str, Any]:
        username = (username or "").strip()
        email = (email or "").strip()
        if not username or not email or not password:
            raise StorageValidationError(messages.ALL_FIELDS_REQUIRED)
        users = self._users()
        for user in users:
            if user.username.lower() == username.lower() or user.email.lower() == email.lower():
                raise DuplicateUserError(messages.USER_EXISTS)
        users.append(UserAccount(username=username, email=email, password=hash_password(password)))
        self._dump([u.to_dict() for u in users])
        logger.info(f"Registered user {username}")
        return self._start_session(username)

    def login(self, identifier: str, password: str) -> Dict[str, Any]:
        if not identifier or not identifier.strip() or not password:
            raise StorageValidationError(messages.LOGIN_FIELDS_REQUIRED)
        users = self._users()
        user = self._find(users, identifier)
        if user is None:
            raise InvalidLoginError(messages.INVALID_LOGIN)
        valid, new_hash = _verify_and_update(password, user.password)
        if not valid:
            raise InvalidLoginError(messages.INVALID_LOGIN)
        if new_hash:
            user.password = new_hash
            self._dump([u.to_dict() for u in users])
            logger.info(f"Upgraded stored password for {user.username}")
        return self._start_session(user.username)

    def _start_session(self, username: str) -> Dict[str, Any]:
        session = {"username": username}
        self.storage.set_item(CURRENT_USER_KEY, json.dumps(session))
        return session

    def current_user(self) -> Optional[Dict[str, Any]]:
        raw = self.storage.get_item(CURRENT_USER_KEY)
        if not raw:
            return None
        try:
            session = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt session, logging out: {e}")
            self.logout()
            return None
        return session if isinstance(session, dict) and session.get("username") else None

    def logout(self) -> None:
        self.storage.remove_item(CURRENT_USER_KEY)


# --- cached images ---
class ImageCacheStore:
    """Single cached images (data URLs) and lists of uploaded selfies."""

    def __init__(self, storage: LocalStorage):
        self.storage = storage

    def get_image(self, key: str = AVATAR_PHOTO_KEY) -> Optional[str]:
        return self.storage.get_item(key)

    def set_image(self, data_url: str, key: str = AVATAR_PHOTO_KEY) -> None:
        self.storage.set_item(key, data_url)

    def clear(self, key: str) -> None:
        self.storage.remove_item(key)

    def get_images(self, key: str) -> List[str]:
        raw = self.storage.get_item(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt image list under {key!r}: {e}")
            return []
        return [d for d in data if isinstance(d, str)] if isinstance(data, list) else []

    def set_images(self, key: str, data_urls: List[str]) -> None:
        self.storage.set_item(key, json.dumps(list(data_urls)))
