import json
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional, Union

# Job states
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
RETRYING = "retrying"

JOB_STATES = (PENDING, PROCESSING, COMPLETED, FAILED, RETRYING)
OUTSTANDING_STATES = (PENDING, PROCESSING, RETRYING)

# Job kinds
METRICS_REFRESH = "metrics-refresh"
ENGAGER_DISCOVERY = "engager-discovery"
ALERT_FORMATION = "alert-formation"
SNAPSHOT = "snapshot"

JOB_KINDS = (METRICS_REFRESH, ENGAGER_DISCOVERY, ALERT_FORMATION, SNAPSHOT)

# Campaign states
CAMPAIGN_ACTIVE = "active"
CAMPAIGN_COMPLETED = "completed"
CAMPAIGN_DELETED = "deleted"

CAMPAIGN_STATES = (CAMPAIGN_ACTIVE, CAMPAIGN_COMPLETED, CAMPAIGN_DELETED)

# Alert states
ALERT_PENDING = "pending"
ALERT_SENT = "sent"
ALERT_SKIPPED = "skipped"

ACTION_TYPES = ("retweet", "reply", "quote")


@dataclass
class Job:
    id: int
    campaign_id: str
    kind: str
    payload: Dict[str, Any]
    status: str = PENDING
    retry_count: int = 0
    max_retries: int = 3
    retry_after: Optional[str] = None
    unit_key: str = ""
    claimed_by: Optional[str] = None
    last_error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        data = dict(row)
        data["payload"] = json.loads(data.get("payload") or "{}")
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class Alert:
    id: int
    campaign_id: str
    engagement_id: int
    importance_score: float
    llm_copy: Optional[str] = None
    status: str = ALERT_PENDING
    created_at: str = ""
    sent_at: Optional[str] = None
    scheduled_send_time: Optional[str] = None

    @property
    def has_llm_copy(self) -> bool:
        return bool(self.llm_copy and self.llm_copy.strip())

    @classmethod
    def from_row(cls, row) -> "Alert":
        data = dict(row)
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


# ---------- Job payloads (one shape per kind) ----------
@dataclass(frozen=True)
class MetricsRefreshPayload:
    tweet_id: str

    def unit_key(self) -> str:
        return self.tweet_id


@dataclass(frozen=True)
class EngagerDiscoveryPayload:
    tweet_id: str
    action_type: str

    def unit_key(self) -> str:
        return f"{self.tweet_id}:{self.action_type}"


@dataclass(frozen=True)
class AlertFormationPayload:
    limit: int = 1000

    def unit_key(self) -> str:
        return ""


@dataclass(frozen=True)
class SnapshotPayload:
    def unit_key(self) -> str:
        return ""


Payload = Union[MetricsRefreshPayload, EngagerDiscoveryPayload, AlertFormationPayload, SnapshotPayload]

PAYLOAD_TYPES = {
    METRICS_REFRESH: MetricsRefreshPayload,
    ENGAGER_DISCOVERY: EngagerDiscoveryPayload,
    ALERT_FORMATION: AlertFormationPayload,
    SNAPSHOT: SnapshotPayload,
}


def parse_payload(kind: str, data: Optional[Dict[str, Any]]) -> Payload:
    """Validate a raw payload dict against the shape registered for `kind`."""
    if kind not in PAYLOAD_TYPES:
        raise ValueError(f"Unknown job kind {kind!r}. Allowed: {', '.join(JOB_KINDS)}")
    data = dict(data or {})
    cls = PAYLOAD_TYPES[kind]
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unexpected payload field(s) for {kind}: {', '.join(sorted(unknown))}")
    try:
        payload = cls(**data)
    except TypeError as e:
        raise ValueError(f"Invalid payload for {kind}: {e}")

    if isinstance(payload, (MetricsRefreshPayload, EngagerDiscoveryPayload)):
        if not isinstance(payload.tweet_id, str) or not payload.tweet_id.strip():
            raise ValueError(f"{kind} payload needs a non-empty tweet_id")
    if isinstance(payload, EngagerDiscoveryPayload) and payload.action_type not in ACTION_TYPES:
        raise ValueError(f"action_type must be one of: {', '.join(ACTION_TYPES)}")
    if isinstance(payload, AlertFormationPayload):
        if isinstance(payload.limit, bool) or not isinstance(payload.limit, int) or payload.limit <= 0:
            raise ValueError("alert-formation limit must be a positive integer")
    return payload


def payload_to_json(payload: Payload) -> str:
    return json.dumps(asdict(payload), sort_keys=True)
