"""Buffer-rule precedence and the interval arithmetic the resolver relies on.

Precedence is a total order: scope specificity, then `priority` (higher wins),
then rule id (lowest wins) so two otherwise identical rules never tie.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Sequence

# type+doctor > doctor > type > department > hospital-wide
SCOPE_RANK = {
    "doctor_type": 4,
    "doctor": 3,
    "appointment_type": 2,
    "department": 1,
    "hospital": 0,
}

def rule_scope(rule) -> str:
    if rule.doctor_id and rule.appointment_type:
        return "doctor_type"
    if rule.doctor_id:
        return "doctor"
    if rule.appointment_type:
        return "appointment_type"
    if rule.department_id:
        return "department"
    return "hospital"

def rule_matches(rule, *, doctor_id: uuid.UUID, appointment_type: str | None, department_id: uuid.UUID | None) -> bool:
    if not rule.is_active:
        return False
    if rule.doctor_id and rule.doctor_id != doctor_id:
        return False
    if rule.appointment_type and rule.appointment_type != appointment_type:
        return False
    if rule.department_id and rule.department_id != department_id:
        return False
    return True

def precedence_key(rule) -> tuple:
    # sorted ascending => best rule first
    return (-SCOPE_RANK[rule_scope(rule)], -(rule.priority or 0), str(rule.id))

def select_buffer_rule(rules: Iterable, *, doctor_id: uuid.UUID, appointment_type: str | None = None, department_id: uuid.UUID | None = None):
    matching = [r for r in rules if rule_matches(r, doctor_id=doctor_id, appointment_type=appointment_type, department_id=department_id)]
    if not matching:
        return None
    return min(matching, key=precedence_key)

@dataclass(frozen=True)
class BufferPolicy:
    before: int = 0
    after: int = 0
    cleanup: int = 0
    max_consecutive: int | None = None
    required_break: int | None = None
    rule_id: uuid.UUID | None = None

    @classmethod
    def from_rule(cls, rule) -> "BufferPolicy":
        if rule is None:
            return cls()
        return cls(
            before=rule.buffer_before_minutes or 0,
            after=rule.buffer_after_minutes or 0,
            cleanup=rule.cleanup_time_minutes or 0,
            max_consecutive=rule.max_consecutive_appointments,
            required_break=rule.required_break_minutes,
            rule_id=rule.id,
        )

    @property
    def run_gap_minutes(self) -> int:
        return self.before + self.after + self.cleanup

def padded(start: datetime, end: datetime, before: int, after: int, cleanup: int) -> tuple[datetime, datetime]:
    return start - timedelta(minutes=before), end + timedelta(minutes=after + cleanup)

def overlaps(a: tuple[datetime, datetime], b: tuple[datetime, datetime]) -> bool:
    # half-open: touching ranges do not overlap
    return a[0] < b[1] and b[0] < a[1]

def consecutive_run(ranges: Sequence[tuple[datetime, datetime]], candidate: tuple[datetime, datetime], policy: BufferPolicy) -> int:
    """Length of the back-to-back run that would contain `candidate`.

    Two neighbours belong to one run while the idle gap between them is below
    `required_break` (when the rule defines one) or at most the buffer gap.
    """
    items = sorted(list(ranges) + [candidate])
    idx = items.index(candidate)

    def joined(prev: tuple[datetime, datetime], nxt: tuple[datetime, datetime]) -> bool:
        gap = (nxt[0] - prev[1]).total_seconds() / 60
        if policy.required_break is not None:
            return gap < policy.required_break
        return gap <= policy.run_gap_minutes

    count = 1
    i = idx
    while i > 0 and joined(items[i - 1], items[i]):
        count += 1
        i -= 1
    i = idx
    while i < len(items) - 1 and joined(items[i], items[i + 1]):
        count += 1
        i += 1
    return count
