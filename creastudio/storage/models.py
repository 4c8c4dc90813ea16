from dataclasses import asdict, dataclass, field
from typing import Any, Dict

PROJECT_STATUSES = ("idea", "current", "completed")


def as_epoch_ms(value: Any) -> int:
    """Read a stored createdAt; anything that is not a number becomes 0."""
    if isinstance(value, bool):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


@dataclass
class ScriptDocuments:
    script: str = ""
    outline: str = ""
    characters: str = ""
    research: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptDocuments":
        data = data or {}
        return cls(
            script=data.get("script") or "",
            outline=data.get("outline") or "",
            characters=data.get("characters") or "",
            research=data.get("research") or "",
        )


@dataclass
class ScriptProject:
    id: str
    title: str
    created_at: int  # ms since epoch
    status: str = "current"
    documents: ScriptDocuments = field(default_factory=ScriptDocuments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "status": self.status,
            "documents": asdict(self.documents),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptProject":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            created_at=as_epoch_ms(data.get("createdAt")),
            status=data.get("status") or "current",
            documents=ScriptDocuments.from_dict(data.get("documents")),
        )


@dataclass
class BrandVoice:
    id: str
    name: str
    description: str = ""
    content: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrandVoice":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            description=data.get("description") or "",
            content=data.get("content") or "",
        )


@dataclass
class UserAccount:
    username: str
    email: str
    password: str  # bcrypt hash; older records may hold plaintext

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def public_dict(self) -> Dict[str, Any]:
        return {"username": self.username, "email": self.email}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserAccount":
        return cls(
            username=data.get("username") or "",
            email=data.get("email") or "",
            password=data.get("password") or "",
        )
