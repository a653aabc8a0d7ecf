# core/ingestion.py

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from core.color_index import ColorIndex
from core.database import FeatureStore
from core.errors import NotFound, ValidationError
from core.feature_extractors import FeatureExtractor
from core.locks import KeyedLock
from core.models import CallerIdentity, ExtractionResult, ImageRecord, ProcessingStatus
from core.vector_index import VectorIndex
from security.auth import require_caller
from security.input_validation import SecurityValidator
from utils.color_utils import parse_color
from utils.file_utils import ImageFileStore
from utils.image_utils import make_thumbnail
from utils.logging_config import log_operation

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """
    Upload handling and the pending -> completed | failed state machine.

    Uploads are persisted as pending and acknowledged immediately; feature
    extraction runs on a worker pool. A record is written as completed in the
    store before it is added to either index, so the indexes never get ahead
    of durable state. Work on one identifier (completion, deletion,
    reprocessing) is serialised by a per-identifier lock; different images
    never wait on each other.
    """

    def __init__(self, store: FeatureStore, vector_index: VectorIndex,
                 color_index: ColorIndex, extractor: FeatureExtractor,
                 file_store: ImageFileStore,
                 validator: Optional[SecurityValidator] = None,
                 n_workers: int = 4, thumbnail_size: int = 300):
        self.store = store
        self.vector_index = vector_index
        self.color_index = color_index
        self.extractor = extractor
        self.file_store = file_store
        self.validator = validator or SecurityValidator()
        self.thumbnail_size = thumbnail_size

        self._executor = ThreadPoolExecutor(max_workers=n_workers,
                                            thread_name_prefix="ingest")
        self._inflight: Dict[int, Future] = {}
        self._inflight_lock = threading.Lock()
        self._locks = KeyedLock()

    # Upload

    def upload(self, caller: Optional[CallerIdentity],
               files: Iterable[Tuple[str, bytes]]) -> List[ImageRecord]:
        """
        Accept one or more image payloads

        Every file is validated before anything is stored, so a bad file
        rejects the whole request; a storage failure part-way through
        discards whatever the batch had already stored.

        Args:
            caller: Verified caller identity
            files: (filename, bytes) pairs

        Returns:
            The created records, all in the pending state
        """
        caller = require_caller(caller)
        files = list(files)
        if not files:
            raise ValidationError("No files uploaded")

        validated = []
        for filename, data in files:
            safe_name, image = self.validator.validate_upload(filename, data)
            validated.append((safe_name, data, image))

        created, saved = [], []
        try:
            for safe_name, data, image in validated:
                thumbnail = make_thumbnail(image, self.thumbnail_size)
                paths = self.file_store.save(safe_name, data, thumbnail)
                saved.append(paths)
                record = self.store.create_pending(
                    filename=safe_name,
                    original_path=paths[0],
                    thumbnail_path=paths[1],
                    uploaded_by=caller.user_id,
                )
                created.append((record, data))
        except Exception:
            self._discard([record for record, _ in created], saved)
            raise

        for record, data in created:
            log_operation(logger, 'upload', image_id=record.id,
                          filename=record.filename, user=caller.user_id, size=len(data))
            self._submit(record.id, data)

        return [record for record, _ in created]

    def _discard(self, records: List[ImageRecord], saved: List[Tuple[str, str]]):
        """Undo a partially stored batch"""
        for record in records:
            self.store.delete(record.id)
        for original_path, thumbnail_path in saved:
            self.file_store.remove(original_path, thumbnail_path)
        logger.warning("Upload aborted; discarded %d stored files", len(saved))

    def _submit(self, image_id: int, data: bytes):
        future = self._executor.submit(self.process, image_id, data)
        with self._inflight_lock:
            self._inflight[image_id] = future
        future.add_done_callback(lambda f, i=image_id: self._forget(i, f))

    def _forget(self, image_id: int, future: Future):
        with self._inflight_lock:
            if self._inflight.get(image_id) is future:
                del self._inflight[image_id]

    # Worker

    def process(self, image_id: int, data: bytes) -> Optional[ProcessingStatus]:
        """
        Extract features for one pending image and commit the outcome

        Returns:
            The terminal status written, or None when the record was deleted
            (or reset) before the outcome could be committed
        """
        try:
            result = self._checked(self.extractor.extract(data))
        except Exception as e:  # noqa: BLE001 - any extractor failure is recorded on the record
            message = str(e) or type(e).__name__
            with self._locks.hold(image_id):
                written = self.store.mark_failed(image_id, message)
            log_operation(logger, 'extraction_failed', image_id=image_id,
                          error=message, recorded=written)
            return ProcessingStatus.FAILED if written else None

        with self._locks.hold(image_id):
            if not self.store.mark_completed(image_id, result):
                logger.info("Image %s was deleted or reset during extraction; not indexing",
                            image_id)
                return None
            self.vector_index.insert(image_id, result.vector)
            self.color_index.index(image_id, result.colors)

        log_operation(logger, 'completed', image_id=image_id,
                      tags=len(result.tags), colors=len(result.colors))
        return ProcessingStatus.COMPLETED

    def _checked(self, result: ExtractionResult) -> ExtractionResult:
        """Reject extractor output that could not be indexed"""
        vector = np.asarray(result.vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.store.dimension:
            raise ValidationError(
                f"Extractor returned {vector.shape[0]}-d vector, expected {self.store.dimension}"
            )
        if not np.all(np.isfinite(vector)) or not np.any(vector):
            raise ValidationError("Extractor returned a zero or non-finite vector")
        colors = [parse_color(color) for color in result.colors][:self.color_index.max_colors]
        return ExtractionResult(vector=vector, tags=list(result.tags),
                                description=result.description, colors=colors)

    # Lifecycle operations

    def delete(self, caller: Optional[CallerIdentity], image_id: int) -> bool:
        """
        Remove an image from the store, both indexes and file storage

        Queued extraction is cancelled; extraction already running finds the
        record gone and commits nothing. Deleting an unknown id is a no-op.

        Returns:
            True if a record was removed
        """
        require_caller(caller)
        with self._locks.hold(image_id):
            with self._inflight_lock:
                future = self._inflight.get(image_id)
            if future is not None:
                future.cancel()
            try:
                record = self.store.get(image_id)
            except NotFound:
                record = None
            self.store.delete(image_id)
            self.vector_index.remove(image_id)
            self.color_index.remove(image_id)

        if record is None:
            return False
        self.file_store.remove(record.original_path, record.thumbnail_path)
        log_operation(logger, 'delete', image_id=image_id, user=caller.user_id)
        return True

    def reprocess(self, caller: Optional[CallerIdentity], image_id: int) -> ImageRecord:
        """Manually rerun extraction for an image from its stored original"""
        require_caller(caller)
        with self._locks.hold(image_id):
            with self._inflight_lock:
                future = self._inflight.get(image_id)
            if future is not None and not future.done():
                raise ValidationError(f"Image {image_id} is already being processed")
            record = self.store.reset_pending(image_id)
            self.vector_index.remove(image_id)
            self.color_index.remove(image_id)
            # Queued before the lock is released so a second call sees it in flight
            self._resubmit(record)

        log_operation(logger, 'reprocess', image_id=image_id, user=caller.user_id)
        return record

    def _resubmit(self, record: ImageRecord):
        """Queue extraction from the stored original; caller holds the record's lock"""
        try:
            data = self.file_store.read(record.original_path)
        except OSError as e:
            self.store.mark_failed(record.id, f"Original file unavailable: {e}")
            logger.warning("Cannot reprocess image %s: %s", record.id, e)
            return
        self._submit(record.id, data)

    def resume_pending(self) -> int:
        """Resubmit pending records left over from a previous run"""
        resumed = 0
        for record in list(self.store.iter_by_status(ProcessingStatus.PENDING)):
            with self._locks.hold(record.id):
                with self._inflight_lock:
                    if record.id in self._inflight:
                        continue
                self._resubmit(record)
            resumed += 1
        if resumed:
            logger.info("Resumed extraction for %d pending images", resumed)
        return resumed

    def rebuild_indexes(self) -> Dict[str, int]:
        """Recovery path: rebuild both indexes from the store's completed records"""
        vectors = self.vector_index.rebuild(
            (record.id, record.vector) for record in self.store.iter_completed()
        )
        colors = self.color_index.rebuild(
            (record.id, record.colors) for record in self.store.iter_completed()
        )
        log_operation(logger, 'rebuild_indexes', vectors=vectors, colors=colors)
        return {'vectors': vectors, 'colors': colors}

    def wait(self, image_ids: Optional[Iterable[int]] = None,
             timeout: Optional[float] = None) -> bool:
        """Block until extraction for image_ids (default: everything queued) finishes"""
        with self._inflight_lock:
            if image_ids is None:
                futures = list(self._inflight.values())
            else:
                futures = [self._inflight[i] for i in image_ids if i in self._inflight]
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def close(self):
        """Finish queued extraction and stop the workers"""
        self._executor.shutdown(wait=True)
