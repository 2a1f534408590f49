from typing import Mapping, Optional

from pydantic import BaseModel
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.types import Message, Receive

from zaynix import config
from zaynix.app.errors import BadRequest, PayloadTooLarge, UpstreamFailure
from zaynix.app.services.naming import generate_name, now_ms, object_url, timestamp_of
from zaynix.app.services.object_store import (
    DEFAULT_CONTENT_TYPE,
    ObjectExists,
    ObjectStore,
    ObjectStoreError,
)
from zaynix.logger_config import setup_logger

logger = setup_logger()

# One regeneration after a name collision, then give up
MAX_PUT_ATTEMPTS = 2


class UploadResult(BaseModel):
    filename: str
    url: str
    size: int
    mimetype: str


def check_declared_length(headers: Mapping[str, str], ceiling: int) -> None:
    """Reject a request whose declared Content-Length is over ``ceiling``."""
    content_length = headers.get("content-length")
    if content_length is None:
        return
    try:
        content_length_value = int(content_length)
    except ValueError:
        raise BadRequest("Invalid Content-Length header")
    if content_length_value > ceiling:
        raise PayloadTooLarge(detail=f"Request body exceeds {ceiling} bytes")


class BodyTooLarge(MultiPartException):
    """Raised into the form parser, which then closes the parts it spooled so far."""


class BodyLimit:
    """ASGI receive wrapper that stops reading once ``ceiling`` body bytes arrived.

    Covers clients that omit or understate Content-Length. ``exceeded`` stays
    set after the overflow, since form parsing may rewrap the exception.
    """

    def __init__(self, receive: Receive, ceiling: int):
        self._receive = receive
        self.ceiling = ceiling
        self.received = 0
        self.exceeded = False

    async def __call__(self) -> Message:
        message = await self._receive()
        if message["type"] == "http.request":
            self.received += len(message.get("body", b""))
            if self.received > self.ceiling:
                self.exceeded = True
                raise BodyTooLarge(self.detail)
        return message

    @property
    def detail(self) -> str:
        return f"Request body exceeds {self.ceiling} bytes"


async def read_form(request: Request, ceiling: int, max_files: int) -> FormData:
    """Parse a form-encoded or multipart body of at most ``ceiling`` bytes.

    The caller owns the returned form and must close it.

    Raises:
        PayloadTooLarge: the body is declared or turns out larger than ``ceiling``.
        BadRequest: the body is malformed or has more than ``max_files`` files.
    """
    check_declared_length(request.headers, ceiling)
    limit = BodyLimit(request.receive, ceiling)
    try:
        return await Request(request.scope, receive=limit).form(max_files=max_files)
    except StarletteHTTPException as e:
        if limit.exceeded:
            raise PayloadTooLarge(detail=limit.detail)
        raise BadRequest("Malformed body", detail=str(e.detail))
    except MultiPartException as e:
        if limit.exceeded:
            raise PayloadTooLarge(detail=limit.detail)
        raise BadRequest("Malformed body", detail=e.message)


class UploadService:
    def __init__(self, store: ObjectStore, max_file_size: int):
        self.store = store
        self.max_file_size = max_file_size

    @staticmethod
    def measure(upload: UploadFile) -> int:
        upload.file.seek(0, 2)
        size = upload.file.tell()
        upload.file.seek(0)
        return size

    async def _put(self, name: str, upload: UploadFile, size: int, content_type: str) -> None:
        await upload.seek(0)

        async def chunks():
            while chunk := await upload.read(config.CHUNK_SIZE):
                yield chunk

        await self.store.put(name, chunks(), content_type=content_type, size=size)

    async def handle_upload(self, upload: Optional[UploadFile], base_url: str) -> UploadResult:
        """Store an uploaded file under a generated name.

        Args:
            upload: The ``file`` part of the multipart body, if any.
            base_url: Scheme and host the client used to reach the gateway.

        Returns:
            The generated name, its gateway URL, the byte size and the content type.
        """
        if upload is None or not isinstance(upload, UploadFile):
            raise BadRequest("No file provided")

        size = self.measure(upload)
        logger.debug(f"Upload of {upload.filename!r}: {size} bytes")
        if size > self.max_file_size:
            raise PayloadTooLarge(detail=f"File exceeds {self.max_file_size} bytes")

        original = upload.filename or "file"
        content_type = upload.content_type or DEFAULT_CONTENT_TYPE
        name = generate_name(original)

        for attempt in range(1, MAX_PUT_ATTEMPTS + 1):
            try:
                await self._put(name, upload, size, content_type)
                break
            except ObjectExists as e:
                if attempt == MAX_PUT_ATTEMPTS:
                    logger.error(f"Upload of {name} collided again, giving up")
                    raise UpstreamFailure("Upload failed", detail=str(e))
                retry_name = generate_name(original, max(now_ms(), timestamp_of(name) + 1))
                logger.warning(f"Name collision on {name}, retrying as {retry_name}")
                name = retry_name
            except ObjectStoreError as e:
                logger.error(f"Storage upload error for {name}: {str(e)}")
                raise UpstreamFailure("Upload failed", detail=str(e))

        logger.info(f"Uploaded {name} ({size} bytes, {content_type})")
        return UploadResult(
            filename=name,
            url=object_url(base_url, name),
            size=size,
            mimetype=content_type,
        )
