from __future__ import annotations

"""
Canvas metadata, ownership and share-code joins.

Four collections back the registry: ``canvases`` (metadata), ``shareCodes``
(code -> canvas), ``userCanvases`` (per-user owned/shared index) and the
``canvas`` shape documents owned by ``ShapeStore``.
"""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .errors import CanvasNotFoundError, PermissionDeniedError, ShareCodeError
from .gateway import DEFAULT_COLLECTION, PersistenceGateway

LOGGER = logging.getLogger(__name__)

CANVASES_COLLECTION = "canvases"
SHARE_CODES_COLLECTION = "shareCodes"
USER_CANVASES_COLLECTION = "userCanvases"

SHARE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SHARE_CODE_LENGTH = 6
SHARE_CODE_ATTEMPTS = 10

DEFAULT_CANVAS_SETTINGS = {"width": 40000, "height": 20000, "backgroundColor": "#ffffff"}


def generate_share_code() -> str:
    return "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(SHARE_CODE_LENGTH))


def validate_share_code_format(code: Any) -> bool:
    if not isinstance(code, str) or len(code) != SHARE_CODE_LENGTH:
        return False
    return all(char in SHARE_CODE_ALPHABET for char in code.upper())


def format_share_code(code: str) -> str:
    if not code or len(code) != SHARE_CODE_LENGTH:
        return code
    return f"{code[:3]} {code[3:]}"


def normalise_share_code(code: str) -> str:
    return "".join(str(code or "").split()).upper()


async def generate_unique_share_code(
    is_unique: Callable[[str], Awaitable[bool]],
    *,
    attempts: int = SHARE_CODE_ATTEMPTS,
    generator: Callable[[], str] = generate_share_code,
) -> str:
    for _ in range(attempts):
        code = generator()
        if await is_unique(code):
            return code
    raise ShareCodeError("Failed to generate unique share code. Please try again.")


def generate_canvas_id() -> str:
    return f"canvas_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class CanvasRecord:
    id: str
    name: str
    owner_id: str
    owner_name: str
    share_code: str
    created_at: float
    updated_at: float
    settings: Dict[str, Any] = field(default_factory=dict)
    collaborators: List[str] = field(default_factory=list)
    last_accessed_by: Dict[str, float] = field(default_factory=dict)
    thumbnail: Optional[str] = None

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "CanvasRecord":
        return cls(
            id=str(document["id"]),
            name=str(document.get("name") or "Untitled Canvas"),
            owner_id=str(document.get("ownerId") or ""),
            owner_name=str(document.get("ownerName") or "Unknown"),
            share_code=str(document.get("shareCode") or ""),
            created_at=float(document.get("createdAt") or 0.0),
            updated_at=float(document.get("updatedAt") or 0.0),
            settings=dict(document.get("settings") or {}),
            collaborators=list(document.get("collaborators") or []),
            last_accessed_by=dict(document.get("lastAccessedBy") or {}),
            thumbnail=document.get("thumbnail"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ownerId": self.owner_id,
            "ownerName": self.owner_name,
            "shareCode": self.share_code,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "settings": dict(self.settings),
            "collaborators": list(self.collaborators),
            "lastAccessedBy": dict(self.last_accessed_by),
            "thumbnail": self.thumbnail,
        }

    def can_access(self, user_id: str) -> bool:
        return user_id == self.owner_id or user_id in self.collaborators


class CanvasRegistry:
    """Canvas CRUD and the share-code join flow over a ``PersistenceGateway``."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        clock: Optional[Callable[[], float]] = None,
        code_generator: Callable[[], str] = generate_share_code,
    ) -> None:
        self.gateway = gateway
        self._clock = clock or time.time
        self._code_generator = code_generator

    # Helpers ------------------------------------------------------------------
    async def _code_is_free(self, code: str) -> bool:
        existing = await self.gateway.get_document(code, collection=SHARE_CODES_COLLECTION)
        return existing is None

    async def _new_share_code(self) -> str:
        return await generate_unique_share_code(
            self._code_is_free, generator=self._code_generator
        )

    async def _user_index(self, user_id: str) -> Dict[str, Any]:
        document = await self.gateway.get_document(user_id, collection=USER_CANVASES_COLLECTION)
        if document is None:
            return {"userId": user_id, "ownedCanvases": [], "sharedCanvases": []}
        document.setdefault("ownedCanvases", [])
        document.setdefault("sharedCanvases", [])
        return document

    async def _save_user_index(self, user_id: str, index: Dict[str, Any]) -> None:
        await self.gateway.replace_document(user_id, index, collection=USER_CANVASES_COLLECTION)

    async def _save(self, record: CanvasRecord) -> None:
        await self.gateway.replace_document(
            record.id, record.as_dict(), collection=CANVASES_COLLECTION
        )

    # CRUD ---------------------------------------------------------------------
    async def create_canvas(
        self,
        owner_id: str,
        name: Optional[str] = None,
        owner_name: Optional[str] = None,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> CanvasRecord:
        now = self._clock()
        merged_settings = dict(DEFAULT_CANVAS_SETTINGS)
        merged_settings.update({k: v for k, v in (settings or {}).items() if v is not None})
        record = CanvasRecord(
            id=generate_canvas_id(),
            name=name or "Untitled Canvas",
            owner_id=owner_id,
            owner_name=owner_name or "Unknown",
            share_code=await self._new_share_code(),
            created_at=now,
            updated_at=now,
            settings=merged_settings,
            last_accessed_by={owner_id: now},
        )
        await self._save(record)
        await self.gateway.replace_document(
            record.share_code,
            {
                "shareCode": record.share_code,
                "canvasId": record.id,
                "createdAt": now,
                "expiresAt": None,
                "usageCount": 0,
            },
            collection=SHARE_CODES_COLLECTION,
        )
        await self.gateway.replace_document(
            record.id,
            {"canvasId": record.id, "shapes": [], "lastUpdated": now},
            collection=DEFAULT_COLLECTION,
        )
        index = await self._user_index(owner_id)
        index["ownedCanvases"].append(
            {"canvasId": record.id, "name": record.name, "lastAccessed": now, "thumbnail": None}
        )
        await self._save_user_index(owner_id, index)
        LOGGER.info("Canvas %s created by %s", record.id, owner_id)
        return record

    async def get_canvas(self, canvas_id: str) -> CanvasRecord:
        document = await self.gateway.get_document(canvas_id, collection=CANVASES_COLLECTION)
        if document is None:
            raise CanvasNotFoundError(canvas_id)
        return CanvasRecord.from_document(document)

    async def update_canvas(self, canvas_id: str, updates: Mapping[str, Any]) -> CanvasRecord:
        record = await self.get_canvas(canvas_id)
        if "name" in updates and updates["name"]:
            record.name = str(updates["name"])
        if isinstance(updates.get("settings"), Mapping):
            record.settings.update(updates["settings"])
        if "thumbnail" in updates:
            record.thumbnail = updates["thumbnail"]
        record.updated_at = self._clock()
        await self._save(record)
        LOGGER.info("Canvas %s updated", canvas_id)
        return record

    async def delete_canvas(self, canvas_id: str, actor_id: str) -> None:
        record = await self.get_canvas(canvas_id)
        if record.owner_id != actor_id:
            raise PermissionDeniedError(
                "Only the owner can delete this canvas",
                details={"canvas_id": canvas_id},
            )
        await self.gateway.delete_document(canvas_id, collection=CANVASES_COLLECTION)
        if record.share_code:
            await self.gateway.delete_document(
                record.share_code, collection=SHARE_CODES_COLLECTION
            )
        await self.gateway.delete_document(canvas_id, collection=DEFAULT_COLLECTION)
        for user_id in [record.owner_id, *record.collaborators]:
            index = await self._user_index(user_id)
            index["ownedCanvases"] = [
                entry for entry in index["ownedCanvases"] if entry.get("canvasId") != canvas_id
            ]
            index["sharedCanvases"] = [
                entry for entry in index["sharedCanvases"] if entry.get("canvasId") != canvas_id
            ]
            await self._save_user_index(user_id, index)
        LOGGER.info(
            "Canvas %s deleted by %s (%d collaborator index(es) cleared)",
            canvas_id,
            actor_id,
            len(record.collaborators),
        )

    async def owned_canvases(self, user_id: str) -> List[Dict[str, Any]]:
        index = await self._user_index(user_id)
        return list(index["ownedCanvases"])

    async def shared_canvases(self, user_id: str) -> List[Dict[str, Any]]:
        index = await self._user_index(user_id)
        return list(index["sharedCanvases"])

    # Share codes --------------------------------------------------------------
    async def validate_share_code(self, code: str) -> CanvasRecord:
        normalised = normalise_share_code(code)
        if not validate_share_code_format(normalised):
            raise ShareCodeError("Invalid share code", details={"code": code})
        mapping = await self.gateway.get_document(normalised, collection=SHARE_CODES_COLLECTION)
        if mapping is None:
            raise ShareCodeError("Invalid share code", details={"code": code})
        return await self.get_canvas(str(mapping["canvasId"]))

    async def join_by_share_code(
        self, code: str, user_id: str, user_name: Optional[str] = None
    ) -> CanvasRecord:
        record = await self.validate_share_code(code)
        if record.owner_id == user_id:
            raise ShareCodeError("You already own this canvas")
        if user_id in record.collaborators:
            raise ShareCodeError("You are already a collaborator on this canvas")
        now = self._clock()
        record.collaborators.append(user_id)
        record.last_accessed_by[user_id] = now
        await self._save(record)
        index = await self._user_index(user_id)
        index["sharedCanvases"].append(
            {
                "canvasId": record.id,
                "name": record.name,
                "ownerId": record.owner_id,
                "ownerName": record.owner_name,
                "joinedAt": now,
                "lastAccessed": now,
            }
        )
        await self._save_user_index(user_id, index)
        normalised = normalise_share_code(code)
        mapping = await self.gateway.get_document(normalised, collection=SHARE_CODES_COLLECTION)
        if mapping is not None:
            mapping["usageCount"] = int(mapping.get("usageCount") or 0) + 1
            await self.gateway.replace_document(
                normalised, mapping, collection=SHARE_CODES_COLLECTION
            )
        LOGGER.info("%s (%s) joined canvas %s", user_id, user_name or "unnamed", record.id)
        return record

    async def regenerate_share_code(self, canvas_id: str, actor_id: str) -> str:
        record = await self.get_canvas(canvas_id)
        if record.owner_id != actor_id:
            raise PermissionDeniedError(
                "Only the owner can regenerate share code",
                details={"canvas_id": canvas_id},
            )
        new_code = await self._new_share_code()
        if record.share_code:
            await self.gateway.delete_document(
                record.share_code, collection=SHARE_CODES_COLLECTION
            )
        now = self._clock()
        await self.gateway.replace_document(
            new_code,
            {
                "shareCode": new_code,
                "canvasId": canvas_id,
                "createdAt": now,
                "expiresAt": None,
                "usageCount": 0,
            },
            collection=SHARE_CODES_COLLECTION,
        )
        record.share_code = new_code
        record.updated_at = now
        await self._save(record)
        LOGGER.info("Share code for %s regenerated", canvas_id)
        return new_code

    async def remove_collaborator(
        self, canvas_id: str, collaborator_id: str, owner_id: str
    ) -> CanvasRecord:
        record = await self.get_canvas(canvas_id)
        if record.owner_id != owner_id:
            raise PermissionDeniedError(
                "Only the owner can remove collaborators",
                details={"canvas_id": canvas_id},
            )
        record.collaborators = [c for c in record.collaborators if c != collaborator_id]
        await self._save(record)
        index = await self._user_index(collaborator_id)
        index["sharedCanvases"] = [
            entry for entry in index["sharedCanvases"] if entry.get("canvasId") != canvas_id
        ]
        await self._save_user_index(collaborator_id, index)
        LOGGER.info("%s removed from canvas %s", collaborator_id, canvas_id)
        return record

    async def touch(self, canvas_id: str, user_id: str) -> None:
        """Record ``user_id``'s last access; failures are logged, never raised."""
        try:
            record = await self.get_canvas(canvas_id)
            now = self._clock()
            record.last_accessed_by[user_id] = now
            await self._save(record)
            index = await self._user_index(user_id)
            for key in ("ownedCanvases", "sharedCanvases"):
                for entry in index[key]:
                    if entry.get("canvasId") == canvas_id:
                        entry["lastAccessed"] = now
            await self._save_user_index(user_id, index)
        except Exception as exc:
            LOGGER.warning("Could not update last access for %s on %s: %s", user_id, canvas_id, exc)


__all__ = [
    "CANVASES_COLLECTION",
    "SHARE_CODES_COLLECTION",
    "USER_CANVASES_COLLECTION",
    "SHARE_CODE_ALPHABET",
    "CanvasRecord",
    "CanvasRegistry",
    "format_share_code",
    "generate_share_code",
    "generate_unique_share_code",
    "normalise_share_code",
    "validate_share_code_format",
]
