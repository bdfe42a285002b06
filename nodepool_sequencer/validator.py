"""
Request validation.

Runs before any session is created; a rejected request never touches the
cluster. Every rule is checked independently so callers get the full list of
problems at once.
"""
from typing import List, Optional, Tuple

from nodepool_sequencer.models import (
    ScalingIntent,
    SequenceConfig,
    SequenceRequest,
    is_duration,
    parse_duration,
    parse_non_negative_int,
)

DRAIN_REQUIRES_CORDON = "drain requires cordon enabled"
INVALID_TIMEOUT = "invalid timeout format"
FLAG_OPTIONS = ("ignore_daemonsets", "delete_emptydir_data", "force", "disable_eviction", "dry_run")


def validate_config(config: SequenceConfig) -> Tuple[bool, List[str]]:
    errors: List[str] = []
    options = config.drain_options

    if config.drain_enabled and not config.cordon_enabled:
        errors.append(DRAIN_REQUIRES_CORDON)

    for name in FLAG_OPTIONS:
        if not isinstance(getattr(options, name), bool):
            errors.append(f"{name} must be a boolean")

    if parse_non_negative_int(options.grace_period_seconds) is None:
        errors.append("grace period must be a non-negative integer")

    if not is_duration(options.timeout):
        errors.append(INVALID_TIMEOUT)
    elif parse_duration(options.timeout) == 0:
        errors.append("timeout must be greater than zero")

    chunk_size = parse_non_negative_int(options.chunk_size)
    if chunk_size is None or chunk_size < 1:
        errors.append("chunk size must be >= 1")

    if parse_non_negative_int(options.skip_wait_for_delete_seconds) is None:
        errors.append("skip wait for delete timeout must be a non-negative integer")

    return not errors, errors


def validate_scaling_intent(intent: Optional[ScalingIntent], label: str) -> List[str]:
    if intent is None:
        return []
    errors = []
    for name in ("desired_count", "min_nodes", "max_nodes"):
        value = getattr(intent, name)
        if value is not None and value < 0:
            errors.append(f"{label}: {name} must be >= 0")
    if errors:
        return errors

    has_bounds = intent.min_nodes is not None and intent.max_nodes is not None
    if has_bounds and intent.min_nodes > intent.max_nodes:
        errors.append(f"{label}: min_nodes must be <= max_nodes")

    if intent.autoscaling_enabled:
        if not has_bounds:
            errors.append(f"{label}: autoscaling requires min_nodes and max_nodes")
    elif intent.desired_count is None:
        errors.append(f"{label}: desired_count is required when autoscaling is disabled")
    elif has_bounds and not intent.min_nodes <= intent.desired_count <= intent.max_nodes:
        errors.append(f"{label}: desired_count must be between min_nodes and max_nodes")
    return errors


def validate_request(request: SequenceRequest) -> Tuple[bool, List[str]]:
    _, errors = validate_config(request.config)

    if sorted([request.origin.order, request.dest.order]) != [1, 2] or request.origin.order != 1:
        errors.append("origin must have order 1 and destination order 2")
    if request.origin.ref == request.dest.ref:
        errors.append("origin and destination must be different node pools")

    errors.extend(validate_scaling_intent(request.dest.pre_drain_changes, f"{request.dest.ref.name} pre-drain"))
    errors.extend(validate_scaling_intent(request.origin.pre_drain_changes, f"{request.origin.ref.name} pre-drain"))
    errors.extend(validate_scaling_intent(request.dest.post_drain_changes, f"{request.dest.ref.name} post-drain"))
    errors.extend(validate_scaling_intent(request.origin.post_drain_changes, f"{request.origin.ref.name} post-drain"))
    return not errors, errors
