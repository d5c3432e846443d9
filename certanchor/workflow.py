"""Certificate upload, verification and reconciliation.

Uploads are stored before they are anchored, so a ledger failure leaves a
retrievable object rather than an on-chain hash with no document. Because
the two writes cannot be committed together, every object records where it
got to in its ``anchor-status`` metadata:

    stored ──anchor ok──▶ anchored
      │                      ▲
      └──anchor failed──▶ failed ──reconcile──┘

``reconcile`` walks objects that are not ``anchored`` and finishes the job.
Objects written without status metadata are treated as ``stored``.
"""

import enum
import logging
from dataclasses import asdict, dataclass
from typing import List, Optional

from .auth import Principal
from .errors import AnchorFailedError, CertAnchorError, LedgerError, PermissionDenied, ValidationError
from .hashing import digest, is_digest, normalize_digest
from .ledger import Ledger
from .storage import KEY_ROOT, META_HASH, META_STATUS, META_TXHASH, ObjectStore, owner_prefix

logger = logging.getLogger(__name__)


class AnchorStatus(str, enum.Enum):
    STORED = "stored"
    ANCHORED = "anchored"
    FAILED = "failed"

    @classmethod
    def of(cls, metadata) -> "AnchorStatus":
        try:
            return cls(metadata.get(META_STATUS, cls.STORED.value))
        except ValueError:
            return cls.STORED


@dataclass
class UploadResult:
    digest: str
    storage_key: str
    transaction_id: Optional[str]
    status: AnchorStatus = AnchorStatus.ANCHORED

    @property
    def already_anchored(self) -> bool:
        """True when the digest was on the ledger before this upload."""
        return self.transaction_id is None


@dataclass
class VerificationResult:
    digest: str
    is_authentic: bool


@dataclass
class CertificateRecord:
    id: str
    filename: str
    upload_date: Optional[str]
    size: int
    url: str
    hash: str
    tx_hash: str
    status: str

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "uploadDate": self.upload_date,
            "size": self.size,
            "url": self.url,
            "hash": self.hash,
            "txHash": self.tx_hash,
            "status": self.status,
        }


@dataclass
class ReconcileReport:
    checked: int = 0
    already_anchored: int = 0
    confirmed: int = 0
    reanchored: int = 0
    failed: int = 0

    def to_json(self) -> dict:
        return asdict(self)


class CertificateService:
    """Hash, store and anchor certificates against injected collaborators."""

    def __init__(self, store: ObjectStore, ledger: Ledger):
        self.store = store
        self.ledger = ledger

    # --- Upload ---

    @staticmethod
    def require_issuer(principal: Optional[Principal]) -> None:
        if principal is None or not principal.is_issuer:
            raise PermissionDenied("Only issuers can upload certificates")

    def upload(self, principal: Principal, filename: str, content_type: str, data: bytes) -> UploadResult:
        self.require_issuer(principal)
        if not filename:
            raise ValidationError("No certificate file provided")

        d = digest(data)
        key = self.store.put(
            principal.subject,
            filename,
            content_type,
            data,
            metadata={META_HASH: d, META_STATUS: AnchorStatus.STORED.value},
        )
        logger.info("Stored %s (hash %s...)", key, d[:12])

        try:
            tx_id = self.ledger.anchor(d)
        except LedgerError as e:
            logger.error("Anchoring %s failed: %s", key, e)
            self._mark(key, AnchorStatus.FAILED)
            raise AnchorFailedError(d, key, str(e)) from e

        if tx_id is None:
            logger.info("%s... was already anchored, no transaction sent for %s", d[:12], key)
        else:
            logger.info("Anchored %s... in %s", d[:12], tx_id)
        self._mark(key, AnchorStatus.ANCHORED, tx_id)
        return UploadResult(digest=d, storage_key=key, transaction_id=tx_id)

    # --- Verification (read-only) ---

    def verify(self, data: bytes) -> VerificationResult:
        d = digest(data)
        return VerificationResult(digest=d, is_authentic=self.ledger.query(d))

    def verify_digest(self, text: str) -> VerificationResult:
        d = normalize_digest(text)
        return VerificationResult(digest=d, is_authentic=self.ledger.query(d))

    # --- Listing ---

    def list_uploads(self, principal: Principal) -> List[CertificateRecord]:
        records = []
        for obj in self.store.list(principal.subject):
            records.append(
                CertificateRecord(
                    id=obj.key,
                    filename=obj.filename,
                    upload_date=obj.last_modified.isoformat() if obj.last_modified else None,
                    size=obj.size,
                    url=obj.url,
                    hash=obj.metadata.get(META_HASH, ""),
                    tx_hash=obj.metadata.get(META_TXHASH, ""),
                    status=AnchorStatus.of(obj.metadata).value,
                )
            )
        return records

    def stats(self, user_count: Optional[int] = None) -> dict:
        try:
            total = self.ledger.total()
        except LedgerError as e:
            logger.error("Error getting certificate count from ledger: %s", e)
            total = None
        return {
            "totalCertificates": str(total or 0),
            "totalVerifications": "0",
            "activeUsers": str(user_count or 0),
        }

    # --- Reconciliation ---

    def reconcile(self, owner_id: Optional[str] = None) -> ReconcileReport:
        """Finish anchoring for every object that is not marked anchored.

        A digest already present on the ledger is only re-marked, never
        resubmitted. Ledger failures mark the object ``failed`` and the scan
        continues; storage failures abort it.
        """
        prefix = owner_prefix(owner_id) if owner_id else KEY_ROOT + "/"
        report = ReconcileReport()
        for key in self.store.iter_keys(prefix):
            report.checked += 1
            metadata = self.store.head(key)
            if AnchorStatus.of(metadata) is AnchorStatus.ANCHORED:
                report.already_anchored += 1
                continue

            d = metadata.get(META_HASH)
            if not is_digest(d):
                d = digest(self.store.read(key))
                self.store.set_metadata(key, {META_HASH: d})

            try:
                if self.ledger.query(d):
                    self._mark(key, AnchorStatus.ANCHORED, metadata.get(META_TXHASH, ""))
                    report.confirmed += 1
                    continue
                tx_id = self.ledger.anchor(d)
            except LedgerError as e:
                logger.error("Reconciliation could not anchor %s: %s", key, e)
                self._mark(key, AnchorStatus.FAILED)
                report.failed += 1
                continue

            if tx_id is None:
                # landed between the query and the anchor call
                self._mark(key, AnchorStatus.ANCHORED, metadata.get(META_TXHASH, ""))
                report.confirmed += 1
                continue
            self._mark(key, AnchorStatus.ANCHORED, tx_id)
            report.reanchored += 1
            logger.info("Reconciled %s in %s", key, tx_id)

        logger.info("Reconciliation finished: %s", report)
        return report

    def _mark(self, key: str, status: AnchorStatus, tx_id: Optional[str] = None) -> None:
        """Record an anchoring state transition on the stored object.

        A failed write is logged only: the ledger remains the source of
        truth and reconciliation rewrites the marker later.
        """
        updates = {META_STATUS: status.value}
        if tx_id:
            updates[META_TXHASH] = tx_id
        try:
            self.store.set_metadata(key, updates)
        except CertAnchorError as e:
            logger.warning("Could not mark %s as %s: %s", key, status.value, e)
