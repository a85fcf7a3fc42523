"""
The Condition Manager: get/set/prune status conditions on Managed Resources
"""

# Standard
from enum import Enum
from typing import List, Optional, Tuple

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from . import config
from .constants import READY_CONDITION
from .utils import format_timestamp, nested_get, nested_set, now

log = alog.use_channel("CONDS")

# Where the conditions of a Managed Resource live
STATUS_CONDITIONS = "status.conditions"
ROLLOUT_CONDITIONS = "status.rollout.conditions"


class ConditionStatus(Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ReadyReason(Enum):
    """Reasons for the Ready condition"""

    READY = "Ready"
    WAITING_TO_BECOME_READY = "WaitingToBecomeReady"
    DEPENDENCIES_NOT_READY = "DependenciesNotReady"
    ERRORED = "Errored"


class ProvisionedReason(Enum):
    """Reasons for the Provisioned condition of a ControlPlane"""

    PROVISIONED = "Provisioned"
    NO_DATAPLANE = "NoDataPlane"
    PODS_NOT_READY = "PodsNotReady"


class RolloutReason(Enum):
    """Reasons for the RolledOut condition"""

    PROGRESSING = "Progressing"
    AWAITING_PROMOTION = "AwaitingPromotion"
    PROMOTION_IN_PROGRESS = "PromotionInProgress"
    PROMOTION_FAILED = "PromotionFailed"
    PROMOTION_DONE = "PromotionDone"
    WAITING_FOR_CHANGE = "WaitingForChange"
    FAILED = "Failed"


def new_condition(  # pylint: disable=too-many-arguments
    condition_type: str,
    status: ConditionStatus,
    reason: Enum,
    message: str = "",
    observed_generation: int = 0,
) -> dict:
    """Build a condition dict stamped with the current time

    Args:
        condition_type:  str
            The condition type (e.g. Ready)
        status:  ConditionStatus
            True, False or Unknown
        reason:  Enum
            The machine readable reason
        message:  str
            The human readable message
        observed_generation:  int
            The generation of the Managed Resource this condition describes

    Returns:
        condition:  dict
            The condition in its serialized form
    """
    return {
        "type": condition_type,
        "status": status.value,
        "reason": reason.value,
        "message": message,
        "observedGeneration": observed_generation,
        "lastTransitionTime": format_timestamp(now()),
    }


def get_conditions(obj: dict, path: str = STATUS_CONDITIONS) -> List[dict]:
    return nested_get(obj, path, [])


def get_condition(
    obj: dict, condition_type: str, path: str = STATUS_CONDITIONS
) -> Tuple[Optional[dict], bool]:
    """Find a condition by type

    Returns:
        condition:  Optional[dict]
            The condition if found
        found:  bool
            Whether a condition of the type exists
    """
    for condition in get_conditions(obj, path):
        if condition.get("type") == condition_type:
            return condition, True
    return None, False


def set_condition(obj: dict, condition: dict, path: str = STATUS_CONDITIONS):
    """Set a condition on the object. An existing condition of the same type is
    replaced in place. When the status does not change, the previous
    lastTransitionTime is kept. The list is pruned afterwards.
    """
    conditions = list(get_conditions(obj, path))
    for i, current in enumerate(conditions):
        if current.get("type") == condition["type"]:
            if current.get("status") == condition.get("status") and current.get(
                "lastTransitionTime"
            ):
                condition = dict(
                    condition, lastTransitionTime=current["lastTransitionTime"]
                )
            conditions[i] = condition
            break
    else:
        conditions.append(condition)
    log.debug3("Setting %s condition at %s: %s", condition["type"], path, condition)
    nested_set(obj, path, conditions)
    prune(obj, path)


def prune(obj: dict, path: str = STATUS_CONDITIONS):
    """Drop the oldest conditions, by list position, until no more than
    max_conditions remain
    """
    conditions = get_conditions(obj, path)
    overflow = len(conditions) - config.max_conditions
    if overflow > 0:
        log.debug2("Pruning %d conditions at %s", overflow, path)
        nested_set(obj, path, conditions[overflow:])


def is_ready(obj: dict) -> bool:
    """True iff the object has a Ready condition with status True"""
    condition, found = get_condition(obj, READY_CONDITION)
    return found and condition.get("status") == ConditionStatus.TRUE.value


def _condition_key(condition: dict) -> tuple:
    return (
        condition.get("type"),
        condition.get("status"),
        condition.get("reason"),
        condition.get("message"),
        condition.get("observedGeneration"),
    )


def needs_status_update(current: List[dict], updated: List[dict]) -> bool:
    """Compare two condition lists without regard to order or to
    lastTransitionTime

    Returns:
        needs_update:  bool
            True if the lists differ in length or in any
            (type, status, reason, message, observedGeneration) entry
    """
    current = current or []
    updated = updated or []
    if len(current) != len(updated):
        return True
    return sorted(map(_condition_key, current), key=str) != sorted(
        map(_condition_key, updated), key=str
    )


def status_changed(current: Optional[dict], updated: Optional[dict]) -> bool:
    """Whether two status dicts differ in observable content. Condition order
    and transition times are ignored.
    """
    diff = DeepDiff(
        current or {},
        updated or {},
        ignore_order=True,
        exclude_regex_paths=[r".*\['lastTransitionTime'\]"],
    )
    if diff:
        log.debug3("Status diff: %s", diff)
    return bool(diff)
