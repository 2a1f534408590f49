import hmac
from typing import Optional

from zaynix.app.errors import BadRequest, Forbidden, UpstreamFailure
from zaynix.app.services.object_store import ObjectStore, ObjectStoreError
from zaynix.logger_config import setup_logger

logger = setup_logger()


class DeleteService:
    def __init__(self, store: ObjectStore, delete_token: str):
        self.store = store
        self.delete_token = delete_token

    def is_authorized(self, token: Optional[str]) -> bool:
        """Exact match against the shared secret, in constant time."""
        if token is None:
            return False
        return hmac.compare_digest(token.encode("utf-8"), self.delete_token.encode("utf-8"))

    async def handle_delete(self, token: Optional[str], filename: Optional[str]) -> None:
        # The token is checked before anything about the file is looked at
        if not self.is_authorized(token):
            logger.warning(f"Rejected delete of {filename!r}: bad token")
            raise Forbidden()

        if not filename:
            raise BadRequest("filename required")

        try:
            await self.store.delete([filename])
        except ObjectStoreError as e:
            logger.error(f"Storage delete error for {filename}: {str(e)}")
            raise UpstreamFailure("Delete failed", detail=str(e))

        logger.info(f"Deleted {filename}")
