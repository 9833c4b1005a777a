from hospital_scheduling.core.clock import as_aware

PRIORITY_RANK = {"urgent": 3, "high": 2, "normal": 1, "low": 0}

def rank_key(entry) -> tuple:
    # urgency desc, priority desc, oldest first, then id for a stable total order
    return (
        -(entry.urgency_level or 0),
        -PRIORITY_RANK.get(entry.priority, PRIORITY_RANK["normal"]),
        as_aware(entry.created_at),
        str(entry.id),
    )

def rank(entries) -> list:
    return sorted(entries, key=rank_key)

def slot_matches(entry, slot, appointment_type: str | None = None) -> bool:
    if entry.doctor_id and entry.doctor_id != slot.doctor_id:
        return False
    if entry.preferred_date_start and slot.slot_date < entry.preferred_date_start:
        return False
    if entry.preferred_date_end and slot.slot_date > entry.preferred_date_end:
        return False
    if entry.preferred_times and slot.start_time.strftime("%H:%M") not in entry.preferred_times:
        return False
    if appointment_type and entry.appointment_type and entry.appointment_type != appointment_type:
        return False
    return True
