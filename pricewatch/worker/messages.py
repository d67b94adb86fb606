"""Queue message types."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

CHECK_QUEUE = "check"
DIGEST_QUEUE = "digest"
REPORT_QUEUE = "reports"

TRIGGERS = ("manual", "scheduled")


@dataclass
class CheckRequest:
    """Check one product. ``job_id`` matches the persisted CheckJob row."""
    job_id: str
    product_id: Optional[int] = None
    url: Optional[str] = None
    digest_run_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CheckRequest":
        return cls(
            job_id=data["job_id"],
            product_id=data.get("product_id"),
            url=data.get("url"),
            digest_run_id=data.get("digest_run_id"),
        )


@dataclass
class DigestRequest:
    """Run one digest. ``run_id`` matches the persisted DigestRun row."""
    run_id: str
    trigger: str = "manual"

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "DigestRequest":
        return cls(run_id=data["run_id"], trigger=data.get("trigger", "manual"))
