import uuid

import structlog

from notisync.services.resilient_store import ResilientStore

logger = structlog.get_logger(__name__)


async def get_or_create_installation_id(store: ResilientStore, key: str = "installationId") -> str:
    """
    Return this client's persistent installation UUID, creating it on first run.

    If the new id cannot be persisted, a fallback id prefixed "fb-" is
    returned; it lasts for this process only.
    """
    stored = await store.load(key)
    if isinstance(stored, str) and stored:
        return stored

    installation_id = str(uuid.uuid4())
    if await store.save(key, installation_id):
        logger.info("Generated new installation ID", installation_id=installation_id)
        return installation_id

    fallback_id = f"fb-{uuid.uuid4().hex}"
    logger.warning("Using fallback installation ID", installation_id=fallback_id)
    return fallback_id
