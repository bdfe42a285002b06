"""
Value objects shared by the sequencer.

Everything a session is built from is a frozen dataclass: the request is
parsed and validated once at the boundary and then only read by the engine.
"""
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple, Union

from nodepool_sequencer.errors import ValidationError

TIMEOUT_PATTERN = re.compile(r"^\d+[smh]$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}

DRY_RUN_MARKER = "[DRY-RUN]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(value: str) -> int:
    """Convert a duration such as ``300s``, ``5m`` or ``1h`` into seconds"""
    if not isinstance(value, str) or not TIMEOUT_PATTERN.fullmatch(value):
        raise ValueError(f"invalid duration: {value!r}")
    return int(value[:-1]) * _UNIT_SECONDS[value[-1]]


def is_duration(value: Any) -> bool:
    return isinstance(value, str) and TIMEOUT_PATTERN.fullmatch(value) is not None


def parse_non_negative_int(value: Any) -> Optional[int]:
    """Return ``value`` as an int if it is a non-negative integer, else None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str):
        text = value.strip()
        if text.isascii() and text.isdigit():
            return int(text)
    return None


def parse_flag(data: Dict[str, Any], keys: Tuple[str, ...], label: str, errors: List[str],
               default: bool = False) -> bool:
    """Read the first present key of ``keys`` as a JSON boolean"""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, bool):
            errors.append(f"{label}{key} must be a boolean")
            return default
        return value
    return default


class Phase(IntEnum):
    PRE_DRAIN = 1
    CORDON = 2
    DRAIN = 3
    POST_DRAIN = 4
    FINALIZE = 5

    @property
    def label(self) -> str:
        return self.name.replace("_", "-")

    @property
    def weight(self) -> int:
        return PHASE_WEIGHTS[self]


# Drain dominates the cost of a migration
PHASE_WEIGHTS: Dict[Phase, int] = {
    Phase.PRE_DRAIN: 15,
    Phase.CORDON: 10,
    Phase.DRAIN: 50,
    Phase.POST_DRAIN: 15,
    Phase.FINALIZE: 10,
}


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class EventStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class NodePoolRef:
    name: str
    cluster: str
    resource_group: str = ""
    subscription: str = ""

    def __str__(self) -> str:
        return f"{self.cluster}/{self.name}"


@dataclass(frozen=True)
class ScalingIntent:
    autoscaling_enabled: bool = False
    desired_count: Optional[int] = None
    min_nodes: Optional[int] = None
    max_nodes: Optional[int] = None

    @property
    def requested_nodes(self) -> int:
        """Node count the pool is expected to reach after the change"""
        if self.autoscaling_enabled:
            return self.min_nodes or 0
        return self.desired_count or 0

    def describe(self) -> str:
        if self.autoscaling_enabled:
            return f"autoscaling on (min={self.min_nodes}, max={self.max_nodes})"
        return f"autoscaling off (count={self.desired_count})"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], label: str, errors: List[str]) -> Optional["ScalingIntent"]:
        if data is None:
            return None
        if not isinstance(data, dict):
            errors.append(f"{label}: scaling changes must be an object")
            return None
        counts = {}
        for key, aliases in (
            ("desired_count", ("desired_count", "node_count")),
            ("min_nodes", ("min_nodes", "min_node_count")),
            ("max_nodes", ("max_nodes", "max_node_count")),
        ):
            raw = next((data[a] for a in aliases if data.get(a) is not None), None)
            if raw is None:
                counts[key] = None
                continue
            parsed = parse_non_negative_int(raw)
            if parsed is None:
                errors.append(f"{label}: {key} must be a non-negative integer")
            counts[key] = parsed
        autoscaling = parse_flag(data, ("autoscaling_enabled", "autoscaling"), f"{label}: ", errors)
        return cls(autoscaling_enabled=autoscaling, **counts)


@dataclass(frozen=True)
class DrainOptions:
    """
    Per-drain policy.

    Numeric fields keep whatever the caller supplied so the validator can
    report unparseable values; use the accessors once validated.
    """
    ignore_daemonsets: bool = True
    delete_emptydir_data: bool = False
    force: bool = False
    disable_eviction: bool = False
    dry_run: bool = False
    grace_period_seconds: Union[int, str] = 30
    skip_wait_for_delete_seconds: Union[int, str] = 20
    timeout: str = "5m"
    pod_selector: str = ""
    chunk_size: Union[int, str] = 1

    _ALIASES = {
        "grace_period_seconds": ("grace_period_seconds", "grace_period"),
        "skip_wait_for_delete_seconds": ("skip_wait_for_delete_seconds", "skip_wait_for_delete_timeout"),
        "delete_emptydir_data": ("delete_emptydir_data", "delete_emptydir"),
        "force": ("force", "force_delete"),
        "ignore_daemonsets": ("ignore_daemonsets",),
        "disable_eviction": ("disable_eviction",),
        "dry_run": ("dry_run",),
        "timeout": ("timeout",),
        "pod_selector": ("pod_selector",),
        "chunk_size": ("chunk_size",),
    }

    def grace_period(self) -> int:
        return int(self.grace_period_seconds)

    def skip_wait_seconds(self) -> int:
        return int(self.skip_wait_for_delete_seconds)

    def timeout_seconds(self) -> int:
        return parse_duration(self.timeout)

    def chunks(self) -> int:
        return int(self.chunk_size)

    def flags(self) -> List[str]:
        """kubectl-style rendering used in log lines and progress messages"""
        rendered = []
        if self.ignore_daemonsets:
            rendered.append("--ignore-daemonsets")
        if self.delete_emptydir_data:
            rendered.append("--delete-emptydir-data")
        if self.force:
            rendered.append("--force")
        if self.disable_eviction:
            rendered.append("--disable-eviction")
        if self.pod_selector:
            rendered.append(f"--pod-selector={self.pod_selector}")
        if self.dry_run:
            rendered.append("--dry-run")
        rendered.append(f"--grace-period={self.grace_period_seconds}")
        rendered.append(f"--timeout={self.timeout}")
        return rendered

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DrainOptions":
        if not data:
            return cls()
        values = {}
        for name, aliases in cls._ALIASES.items():
            for alias in aliases:
                if alias in data and data[alias] is not None:
                    values[name] = data[alias]
                    break
        # The dashboard sends the timeout as a bare number of seconds
        if isinstance(values.get("timeout"), int) and not isinstance(values["timeout"], bool):
            values["timeout"] = f"{values['timeout']}s"
        return cls(**values)


@dataclass(frozen=True)
class SequenceConfig:
    cordon_enabled: bool = False
    drain_enabled: bool = False
    drain_options: DrainOptions = field(default_factory=DrainOptions)


@dataclass(frozen=True)
class NodePoolSequence:
    ref: NodePoolRef
    order: int
    pre_drain_changes: Optional[ScalingIntent] = None
    post_drain_changes: Optional[ScalingIntent] = None


@dataclass(frozen=True)
class SequenceRequest:
    cluster: str
    origin: NodePoolSequence
    dest: NodePoolSequence
    config: SequenceConfig

    @property
    def pools(self) -> Tuple[NodePoolRef, NodePoolRef]:
        return self.origin.ref, self.dest.ref

    @classmethod
    def from_dict(cls, payload: Any) -> "SequenceRequest":
        """Parse the dashboard payload, raising ValidationError on structural problems"""
        if not isinstance(payload, dict):
            raise ValidationError(["request body must be a JSON object"])

        errors: List[str] = []
        cluster = payload.get("cluster") or ""
        if not cluster:
            errors.append("cluster is required")

        pools = payload.get("node_pools")
        if not isinstance(pools, list) or len(pools) != 2:
            errors.append("sequencing requires exactly 2 node pools")
            raise ValidationError(errors)

        sequences = []
        for index, pool in enumerate(pools):
            label = f"node_pools[{index}]"
            if not isinstance(pool, dict):
                errors.append(f"{label}: must be an object")
                continue
            name = pool.get("name") or ""
            if not name:
                errors.append(f"{label}: name is required")
            order = pool.get("sequence_order")
            if isinstance(order, bool) or order not in (1, 2):
                errors.append(f"{label}: sequence_order must be 1 or 2")
            ref = NodePoolRef(
                name=name,
                cluster=cluster,
                resource_group=pool.get("resource_group") or "",
                subscription=pool.get("subscription") or "",
            )
            sequences.append(NodePoolSequence(
                ref=ref,
                order=order,
                pre_drain_changes=ScalingIntent.from_dict(pool.get("pre_drain_changes"), f"{label}.pre_drain_changes", errors),
                post_drain_changes=ScalingIntent.from_dict(pool.get("post_drain_changes"), f"{label}.post_drain_changes", errors),
            ))

        if len(sequences) == 2 and sorted(s.order for s in sequences if s.order in (1, 2)) != [1, 2]:
            errors.append("node pools must use sequence_order 1 (origin) and 2 (destination) exactly once")

        drain_options = payload.get("drain_options")
        if drain_options is not None and not isinstance(drain_options, dict):
            errors.append("drain_options must be an object")
            drain_options = None
        options = DrainOptions.from_dict(drain_options)
        cordon_enabled = parse_flag(payload, ("cordon_enabled",), "", errors)
        drain_enabled = parse_flag(payload, ("drain_enabled",), "", errors)

        if errors:
            raise ValidationError(errors)

        origin, dest = sorted(sequences, key=lambda s: s.order)
        config = SequenceConfig(cordon_enabled=cordon_enabled, drain_enabled=drain_enabled, drain_options=options)
        return cls(cluster=cluster, origin=origin, dest=dest, config=config)


@dataclass(frozen=True)
class NodePoolUpdate:
    """Single-pool change, optionally preceded by a cordon/drain of that pool"""
    intent: ScalingIntent
    config: Optional[SequenceConfig] = None

    @classmethod
    def from_dict(cls, payload: Any) -> "NodePoolUpdate":
        if not isinstance(payload, dict):
            raise ValidationError(["request body must be a JSON object"])
        errors: List[str] = []
        intent = ScalingIntent.from_dict(payload, "update", errors)

        config = None
        raw = payload.get("cordon_drain_config")
        if raw is not None and not isinstance(raw, dict):
            errors.append("cordon_drain_config must be an object")
        elif raw is not None:
            options = raw.get("drain_options")
            if options is not None and not isinstance(options, dict):
                errors.append("cordon_drain_config.drain_options must be an object")
                options = None
            config = SequenceConfig(
                cordon_enabled=parse_flag(raw, ("cordon_enabled",), "cordon_drain_config.", errors),
                drain_enabled=parse_flag(raw, ("drain_enabled",), "cordon_drain_config.", errors),
                drain_options=DrainOptions.from_dict(options),
            )
        if errors:
            raise ValidationError(errors)
        return cls(intent=intent, config=config)


@dataclass(frozen=True)
class NodeInfo:
    name: str
    ready: bool = True
    unschedulable: bool = False


@dataclass(frozen=True)
class NodePoolInfo:
    """A node pool as the cloud control plane reports it"""
    name: str
    cluster: str
    resource_group: str
    node_count: int = 0
    min_nodes: Optional[int] = None
    max_nodes: Optional[int] = None
    autoscaling_enabled: bool = False
    vm_size: str = ""
    status: str = ""
    is_system: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PodInfo:
    name: str
    namespace: str
    node_name: str
    owner_kinds: Tuple[str, ...] = ()
    has_empty_dir: bool = False
    phase: str = "Running"
    labels: Tuple[Tuple[str, str], ...] = ()

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_daemonset(self) -> bool:
        return "DaemonSet" in self.owner_kinds

    @property
    def is_finished(self) -> bool:
        return self.phase in ("Succeeded", "Failed")


@dataclass
class ProgressEvent:
    phase: int
    phase_name: str
    status: str
    message: str
    progress_percent: float
    node_name: Optional[str] = None
    node_index: Optional[int] = None
    node_total: Optional[int] = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())
    error: Optional[str] = None

    def __post_init__(self):
        self.progress_percent = round(min(100.0, max(0.0, float(self.progress_percent))), 2)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
