import asyncio
import json
import os
import sys
import uuid
from datetime import date, time, timedelta

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from hospital_scheduling.core.config import settings
from hospital_scheduling.core.db import SessionLocal, init_models
from hospital_scheduling.core.errors import NoAvailability
from hospital_scheduling.modules.availability.service import SlotGenerator

# Monday to Friday, 0=Sunday
WORKING_DAYS = range(1, 6)
DEFAULT_BLOCKS = [
    {"start": "09:00", "end": "13:00"},
    {"start": "14:00", "end": "17:00"},
]

async def seed_doctor(generator: SlotGenerator, hospital_id: uuid.UUID, doctor: dict, days_ahead: int):
    doctor_id = uuid.UUID(doctor["doctor_id"])
    slot_minutes = doctor.get("slot_minutes", 30)
    print(f"Processing doctor {doctor.get('name', doctor_id)}")

    existing = await generator.list_windows(hospital_id, doctor_id)
    if existing:
        print(f"  - {len(existing)} window(s) already defined. Skipping window creation.")
    else:
        for day in doctor.get("days", WORKING_DAYS):
            for block in doctor.get("blocks", DEFAULT_BLOCKS):
                await generator.create_window(
                    hospital_id,
                    doctor_id=doctor_id,
                    day_of_week=day,
                    start_time=time.fromisoformat(block["start"]),
                    end_time=time.fromisoformat(block["end"]),
                    slot_duration_minutes=slot_minutes,
                    is_telemedicine=block.get("telemedicine", False),
                )
        print("  - weekly windows created")

    created = 0
    for offset in range(days_ahead):
        try:
            result = await generator.generate_slots(hospital_id, doctor_id, date.today() + timedelta(days=offset), notify_waitlist=False)
            created += len(result.created_ids)
        except NoAvailability:
            continue
    print(f"  - {created} slot(s) generated for the next {days_ahead} day(s)")

async def main():
    """
    Seed weekly availability windows (and the first weeks of slots) from a JSON file:
    [{"doctor_id": "...", "name": "...", "slot_minutes": 15, "days": [1, 3], "blocks": [{"start": "09:00", "end": "12:00"}]}]
    """
    json_file_path = sys.argv[1] if len(sys.argv) > 1 else os.path.join(os.path.dirname(__file__), 'doctors.json')
    days_ahead = int(sys.argv[2]) if len(sys.argv) > 2 else 14
    with open(json_file_path, 'r', encoding='utf-8') as f:
        doctors = json.load(f)

    await init_models()
    hospital_id = uuid.UUID(settings.DEFAULT_HOSPITAL_ID)
    async with SessionLocal() as db:
        generator = SlotGenerator(db)
        for doctor in doctors:
            await seed_doctor(generator, hospital_id, doctor, days_ahead)
    print("Seeding finished.")

if __name__ == "__main__":
    asyncio.run(main())
