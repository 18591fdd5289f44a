from __future__ import annotations

import logging

from .fingerprint import fingerprint
from .logging_utils import get_logger, log_json
from .models import MedicamentoRecord, Outcome
from .storage import RecordStore


class Reconciler:
    """Classify and persist one record at a time.

    ``identity`` mode upserts keyed by ``nregistro`` and rewrites a row only
    when its fingerprint changed. ``checksum`` mode inserts unseen
    fingerprints and never updates in place, so a changed record lands as a
    new row and a duplicate reads as ``unchanged``.
    """

    def __init__(self, store: RecordStore, mode: str = "identity"):
        if mode not in ("identity", "checksum"):
            raise ValueError(f"Unknown reconcile mode: {mode}")
        self.store = store
        self.mode = mode
        self.logger = get_logger()

    def reconcile(self, rec: MedicamentoRecord) -> Outcome:
        cs = fingerprint(rec)
        if self.mode == "checksum":
            return self.store.insert_if_unseen(rec, cs)

        if not rec.identity_key:
            log_json(self.logger, logging.WARNING, "record_skipped", reason="missing_identity_key", checksum=cs)
            return Outcome.SKIPPED
        return self.store.upsert_by_identity(rec, cs)
