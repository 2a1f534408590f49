"""Backing object store clients.

The gateway only needs four primitives from the store: put, get, delete and
list. ``SupabaseObjectStore`` speaks the Supabase Storage REST API through a
shared ``httpx.AsyncClient``; ``InMemoryObjectStore`` keeps everything in a
dict and backs the tests and ``STORAGE_BACKEND=memory``.
"""
import abc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from zaynix import config
from zaynix.logger_config import setup_logger

logger = setup_logger()

DEFAULT_CONTENT_TYPE = "application/octet-stream"

Body = Union[bytes, AsyncIterator[bytes]]


class ObjectStoreError(Exception):
    """The store rejected or failed an operation."""


class ObjectExists(ObjectStoreError):
    """A put without upsert hit an existing object."""


class ObjectMissing(ObjectStoreError):
    """The requested object is not available."""


@dataclass
class ObjectInfo:
    name: str
    size: Optional[int] = None
    created_at: Optional[datetime] = None
    content_type: Optional[str] = None


@dataclass
class ObjectStream:
    """An open object download. Callers must ``aclose`` it once done."""
    content_type: Optional[str]
    chunks: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]] = field(repr=False)
    closed: bool = field(default=False, init=False)

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.close()


class ObjectStore(abc.ABC):
    @abc.abstractmethod
    async def put(self, name: str, body: Body, content_type: Optional[str] = None,
                  size: Optional[int] = None) -> None:
        """Store ``body`` under ``name`` without overwriting.

        Raises:
            ObjectExists: ``name`` is already taken.
            ObjectStoreError: any other store failure.
        """

    @abc.abstractmethod
    async def get(self, name: str) -> ObjectStream:
        """Open a streaming download of ``name``.

        Raises:
            ObjectMissing: the store did not return the object.
            ObjectStoreError: the store could not be reached.
        """

    @abc.abstractmethod
    async def delete(self, names: List[str]) -> None:
        """Remove ``names``. Names that do not exist are ignored."""

    @abc.abstractmethod
    async def list(self, prefix: str = "") -> List[ObjectInfo]:
        """List objects under ``prefix``, newest first."""


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable store timestamp: {value}")
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or payload)
    return str(payload)


def _is_duplicate(response: httpx.Response) -> bool:
    if response.status_code == 409:
        return True
    # Older storage-api versions answer 400 with the real status in the body
    try:
        payload = response.json()
    except ValueError:
        return False
    return isinstance(payload, dict) and (
        str(payload.get("statusCode")) == "409" or payload.get("error") == "Duplicate"
    )


class SupabaseObjectStore(ObjectStore):
    def __init__(self, client: httpx.AsyncClient, base_url: str, key: str, bucket: str):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.key = key
        self.bucket = bucket

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/storage/v1"

    def _auth_headers(self) -> Dict[str, str]:
        return {"apikey": self.key, "Authorization": f"Bearer {self.key}"}

    def object_url(self, name: str) -> str:
        return f"{self.api_url}/object/{self.bucket}/{quote(name, safe='')}"

    def public_url(self, name: str) -> str:
        """Direct address of a public object in the bucket."""
        return f"{self.api_url}/object/public/{self.bucket}/{quote(name, safe='')}"

    async def put(self, name: str, body: Body, content_type: Optional[str] = None,
                  size: Optional[int] = None) -> None:
        headers = self._auth_headers()
        headers["Content-Type"] = content_type or DEFAULT_CONTENT_TYPE
        headers["Cache-Control"] = config.UPLOAD_CACHE_CONTROL
        headers["x-upsert"] = "false"
        if size is not None:
            headers["Content-Length"] = str(size)

        try:
            response = await self.client.post(self.object_url(name), content=body, headers=headers)
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"Error reaching storage: {str(e)}") from e

        if _is_duplicate(response):
            raise ObjectExists(f"Object {name} already exists")
        if response.is_error:
            raise ObjectStoreError(_error_message(response))
        logger.debug(f"Stored {name} in bucket {self.bucket}")

    async def get(self, name: str) -> ObjectStream:
        request = self.client.build_request("GET", self.public_url(name))
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"Error reaching storage: {str(e)}") from e

        if not response.is_success:
            await response.aclose()
            raise ObjectMissing(f"Storage answered {response.status_code} for {name}")

        async def chunks():
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as e:
                raise ObjectStoreError(f"Error reading {name} from storage: {str(e)}") from e

        return ObjectStream(
            content_type=response.headers.get("content-type"),
            chunks=chunks(),
            close=response.aclose,
        )

    async def delete(self, names: List[str]) -> None:
        try:
            response = await self.client.request(
                "DELETE",
                f"{self.api_url}/object/{self.bucket}",
                json={"prefixes": names},
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"Error reaching storage: {str(e)}") from e

        if response.is_error:
            raise ObjectStoreError(_error_message(response))

    async def list(self, prefix: str = "") -> List[ObjectInfo]:
        body = {
            "prefix": prefix,
            "limit": 1000,
            "offset": 0,
            "sortBy": {"column": "created_at", "order": "desc"},
        }
        try:
            response = await self.client.post(
                f"{self.api_url}/object/list/{self.bucket}",
                json=body,
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"Error reaching storage: {str(e)}") from e

        if response.is_error:
            raise ObjectStoreError(_error_message(response))

        objects = []
        for entry in response.json():
            # Folder placeholders come back without an id
            if entry.get("id") is None:
                continue
            metadata = entry.get("metadata") or {}
            objects.append(ObjectInfo(
                name=entry["name"],
                size=metadata.get("size"),
                created_at=_parse_timestamp(entry.get("created_at")),
                content_type=metadata.get("mimetype"),
            ))
        return objects


@dataclass
class _StoredBlob:
    data: bytes
    content_type: str
    created_at: datetime


class InMemoryObjectStore(ObjectStore):
    def __init__(self, chunk_size: int = config.CHUNK_SIZE):
        self.chunk_size = chunk_size
        self._objects: Dict[str, _StoredBlob] = {}

    async def put(self, name: str, body: Body, content_type: Optional[str] = None,
                  size: Optional[int] = None) -> None:
        if isinstance(body, bytes):
            data = body
        else:
            data = b"".join([chunk async for chunk in body])

        # No await between the check and the insert, so this is atomic on the loop
        if name in self._objects:
            raise ObjectExists(f"Object {name} already exists")
        self._objects[name] = _StoredBlob(
            data=data,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            created_at=datetime.now(timezone.utc),
        )

    async def get(self, name: str) -> ObjectStream:
        blob = self._objects.get(name)
        if blob is None:
            raise ObjectMissing(f"No object named {name}")

        async def chunks():
            view = memoryview(blob.data)
            for start in range(0, len(view), self.chunk_size):
                yield bytes(view[start:start + self.chunk_size])

        async def close():
            return None

        return ObjectStream(
            content_type=blob.content_type,
            chunks=chunks(),
            close=close,
        )

    async def delete(self, names: List[str]) -> None:
        for name in names:
            self._objects.pop(name, None)

    async def list(self, prefix: str = "") -> List[ObjectInfo]:
        found = [
            ObjectInfo(name=name, size=len(blob.data), created_at=blob.created_at,
                       content_type=blob.content_type)
            for name, blob in self._objects.items()
            if name.startswith(prefix)
        ]
        return sorted(found, key=lambda info: info.created_at, reverse=True)

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, name: str) -> bool:
        return name in self._objects

    def read(self, name: str) -> bytes:
        return self._objects[name].data


def create_object_store(settings: 'config.Settings', client: httpx.AsyncClient) -> ObjectStore:
    if settings.storage_backend == "memory":
        logger.info("Using in-memory object store; uploads will not survive a restart")
        return InMemoryObjectStore()
    return SupabaseObjectStore(
        client=client,
        base_url=settings.supabase_url or "",
        key=settings.supabase_key or "",
        bucket=settings.bucket,
    )
