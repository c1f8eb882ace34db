"""Single-flight image version coordinator.

Produces each image version at most once across every worker sharing the
key/value store:

    find_version ──hit──> done
        │ miss
        v
    lock(lock_key) ──ABSENT──> find_version ──hit──> done
        │                             └─miss─> next round
        │ NoLock / LockExpired / LockTimeout
        v
    claim(lock_key) ──lost──> next round (wait on the winner)
        │ won
        v
    find_version ──hit──> release lock, done
        │ miss
        v
    fetch original -> find_original -> transform -> upload -> save record -> release lock

The coordinator holds no state of its own; all coordination lives in the
store so horizontally scaled processes see the same locks and records.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

from core.logging import get_logger, timed
from core.store import KeyValueStore
from models.image import ImageRequest, OriginalParams, UploadRequest, VersionResult
from services.blob_store import BlobStore
from services.errors import LockError, LockExpiredError, LockTimeoutError
from services.keys import KeyDeriver
from services.lock import DistributedLock, LockState
from services.transformer import Transformer

logger = get_logger(__name__)


class ArtifactCoordinator:
    """Build-or-fetch orchestration for image versions.

    Args:
        store: Shared KeyValueStore for version records and original params
        lock: DistributedLock over the same store
        keys: KeyDeriver for keys and blob paths
        blob_store: Source of originals and destination of versions
        transformer: Image manipulation capability
        max_rounds: Lock rounds before giving up with LockTimeoutError
    """

    def __init__(self, store: KeyValueStore, lock: DistributedLock, keys: KeyDeriver,
                 blob_store: BlobStore, transformer: Transformer, max_rounds: int = 3):
        self.store = store
        self.lock = lock
        self.keys = keys
        self.blob_store = blob_store
        self.transformer = transformer
        self.max_rounds = max_rounds

    async def get_version(self, image: ImageRequest) -> VersionResult:
        """Serve a version request, flushing cached keys first when asked."""
        if image.flush:
            await self.flush_keys(image)
        return await self.generate_version(image)

    async def generate_version(self, image: ImageRequest) -> VersionResult:
        """Return the version, building it only if no worker has yet."""
        if await self.find_version(image):
            return self._result(image, cached=True)

        lock_key = self.keys.lock_key(image)
        for attempt in range(1, self.max_rounds + 1):
            try:
                await self.lock.lock(lock_key)
            except LockError as e:
                logger.info("Acquiring lock...", key=lock_key, outcome=e.kind.value,
                            attempt=attempt)
                if isinstance(e, (LockExpiredError, LockTimeoutError)):
                    await self.lock.clear_stale(lock_key, e.expiry)

                async with self.lock.claim(lock_key) as claimed:
                    if claimed:
                        # Another worker may have finished between our miss and the claim
                        if await self.find_version(image):
                            logger.info("Version recorded before claim", key=lock_key)
                            return self._result(image, cached=True)
                        logger.info("Processing version... lock set", key=lock_key)
                        await self.process_version(image)
                        return self._result(image, cached=False)

                logger.info("Lock claimed by another worker, waiting", key=lock_key,
                            attempt=attempt)
                continue

            logger.info("Acquiring lock...", key=lock_key, outcome=LockState.ABSENT.value,
                        attempt=attempt)
            if await self.find_version(image):
                return self._result(image, cached=True)

            # Holder released without a record, so its build failed
            logger.warning("Lock released without a version, rebuilding",
                           key=lock_key, attempt=attempt)

        raise LockTimeoutError(lock_key)

    async def process_version(self, image: ImageRequest) -> None:
        """Fetch, transform, upload and record one version.

        The caller holds the lock and releases it when this returns or raises.
        """
        original_path = self.keys.original_path(image)
        version_path = self.keys.version_path(image)
        result = None

        try:
            with timed(logger, "blob download", path=original_path):
                source = await self.blob_store.get_file(original_path)

            params = await self.find_original(image, source)

            with timed(logger, "manipulate image", action=image.options.action):
                result = await self.transformer.transform(image, source,
                                                          animated_gif=params.animated_gif)

            with timed(logger, "blob upload", path=version_path, size=result.size):
                await self.blob_store.upload(UploadRequest(
                    source=result.path,
                    destination=version_path,
                    size=result.size,
                    mime_type=image.mime,
                ))

            await self.save(image)
        finally:
            if result is not None:
                self._delete_tmp_file(result.path)

    async def find_version(self, image: ImageRequest) -> bool:
        """Check whether a version record exists."""
        return await self.store.get(self.keys.version_key(image)) is not None

    async def save(self, image: ImageRequest) -> None:
        """Write the version record, overwriting any stale one."""
        await self.store.set(self.keys.version_key(image), json.dumps({"m": image.mime}))

    async def find_original(self, image: ImageRequest,
                            source: Optional[bytes] = None) -> OriginalParams:
        """Cached original params, identifying the original on a miss.

        Pass source when the original bytes are already in hand so a miss
        does not download them again.
        """
        cached = await self.store.get(self.keys.original_key(image))
        if cached is not None:
            logger.debug("Original retrieved from store", key=self.keys.original_key(image))
            return OriginalParams.from_record(json.loads(cached))
        return await self.get_original(image, source)

    async def get_original(self, image: ImageRequest,
                           source: Optional[bytes] = None) -> OriginalParams:
        """Identify the original, then cache its params (first writer wins)."""
        if source is None:
            path = self.keys.original_path(image)
            with timed(logger, "blob download original", path=path):
                source = await self.blob_store.get_file(path)
        with timed(logger, "identify"):
            info = await self.transformer.identify(source)

        params = OriginalParams(width=info.width, height=info.height,
                                animated_gif=info.animated_gif)
        stored = await self.store.setnx(self.keys.original_key(image),
                                        json.dumps(params.to_record()))
        logger.debug("Original params cached", key=self.keys.original_key(image), stored=stored)
        return params

    async def get_metadata(self, image: ImageRequest) -> Dict[str, Any]:
        """Full identify output for the original (not cached)."""
        source = await self.blob_store.get_file(self.keys.original_path(image))
        info = await self.transformer.identify(source)
        return info.to_dict()

    async def flush_keys(self, image: ImageRequest) -> int:
        """Drop the version record and cached original params."""
        deleted = await self.store.delete([self.keys.version_key(image),
                                           self.keys.original_key(image)])
        logger.info("Flushed cached keys", version_key=self.keys.version_key(image),
                    deleted=deleted)
        return deleted

    def _result(self, image: ImageRequest, cached: bool) -> VersionResult:
        return VersionResult(
            image=image,
            url=self.keys.version_url(image),
            path=self.keys.version_path(image),
            mime=image.mime,
            cached=cached,
        )

    @staticmethod
    def _delete_tmp_file(path: Optional[str]) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("tmp file not removed", path=path, error=str(e))
