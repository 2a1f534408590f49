from typing import AsyncIterator, Dict

from zaynix.app.errors import InternalError, NotFound
from zaynix.app.services.naming import SegmentKind, resolve_segment
from zaynix.app.services.object_store import (
    DEFAULT_CONTENT_TYPE,
    ObjectMissing,
    ObjectStore,
    ObjectStoreError,
    ObjectStream,
)
from zaynix.logger_config import setup_logger

logger = setup_logger()

# Generated names are never reused for different content
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


class PassThrough(Exception):
    """The path segment is not an object reference; another route owns it."""


class ProxyService:
    def __init__(self, store: ObjectStore):
        self.store = store

    async def open(self, segment: str) -> ObjectStream:
        """Open the object named by a root path segment.

        Raises:
            PassThrough: ``segment`` is reserved or does not fit the naming grammar.
            NotFound: the store did not return the object.
            InternalError: the store could not be reached.
        """
        match = resolve_segment(segment)
        if match.kind is not SegmentKind.OBJECT:
            logger.debug(f"Passing through {match.kind.value} segment {segment!r}")
            raise PassThrough(segment)

        try:
            return await self.store.get(match.name)
        except ObjectMissing as e:
            logger.info(f"Proxy miss for {match.name}: {str(e)}")
            raise NotFound()
        except ObjectStoreError as e:
            logger.error(f"Proxy request error for {match.name}: {str(e)}")
            raise InternalError("Server error")

    @staticmethod
    async def relay(stream: ObjectStream) -> AsyncIterator[bytes]:
        """Yield the object's bytes, closing the upstream however relaying ends.

        A store failure after the first byte cannot change the status line any
        more, so it propagates and the server aborts the response.
        """
        try:
            async for chunk in stream.chunks:
                yield chunk
        except ObjectStoreError as e:
            logger.error(f"Proxy stream aborted: {str(e)}")
            raise
        finally:
            await stream.aclose()

    @staticmethod
    def response_headers(stream: ObjectStream) -> Dict[str, str]:
        return {
            "Content-Type": stream.content_type or DEFAULT_CONTENT_TYPE,
            "Cache-Control": IMMUTABLE_CACHE_CONTROL,
            "X-Content-Type-Options": "nosniff",
        }
