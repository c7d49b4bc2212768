import csv
import io
import logging
from typing import Dict, List, Optional, Sequence

from models import Course, Staff, Timetable
from scheduler import CourseDemand, GenerationResult, ScheduleGrid, StaffProfile, TimetableGenerator
from validators import validate_generation_config

logger = logging.getLogger(__name__)


def generator_config_from_app(config) -> dict:
    """Pull scheduler options out of a Flask config mapping."""
    return {
        'allow_consecutive_same_course': config.get('SCHEDULER_ALLOW_CONSECUTIVE', True),
        'spread_across_days': config.get('SCHEDULER_SPREAD_ACROSS_DAYS', True),
        'default_staff_days': config.get('SCHEDULER_DEFAULT_STAFF_DAYS', 'working_days'),
        'overload_threshold': config.get('SCHEDULER_OVERLOAD_THRESHOLD', 40),
    }


def load_directory():
    """All courses and staff, ordered by id so regeneration is repeatable."""
    courses = Course.query.order_by('id').all()
    staff = Staff.query.order_by('id').all()
    return courses, staff


def generate_schedule(timetable: Timetable, courses: Sequence[Course], staff: Sequence[Staff],
                      generator: Optional[TimetableGenerator] = None) -> GenerationResult:
    """
    Run the scheduler for one timetable and store the resulting grid.

    Raises ValidationError for unusable timetable settings and
    StaleTimetableError if the timetable changed while we were generating.
    Unplaceable hours come back as diagnostics on the result.
    """
    hours_per_day = validate_generation_config(timetable.working_days, timetable.hours_per_day)
    expected_version = int(getattr(timetable, 'version', 0) or 0)
    generator = generator or TimetableGenerator()

    result = generator.generate(
        courses=[CourseDemand.from_model(c) for c in courses],
        staff=[StaffProfile.from_model(s) for s in staff],
        working_days=timetable.working_days,
        hours_per_day=hours_per_day,
    )

    timetable.replace_schedule(result.grid.to_list(), expected_version=expected_version)
    logger.info("[Scheduler] Timetable %s regenerated: %d slots filled, %d diagnostics",
                timetable.id, sum(result.course_hours.values()), len(result.diagnostics))
    return result


def populate_staff(member: Staff, course_by_id: Dict) -> dict:
    """Staff JSON with course ids swapped for course documents; ids of deleted courses are dropped."""
    data = member.to_json()
    data['courses'] = [course_by_id[cid].to_json() for cid in member.courses or [] if cid in course_by_id]
    return data


def populate_schedule(schedule: List[dict], course_by_id: Dict, staff_by_id: Dict) -> List[dict]:
    """Swap course and staff ids in a stored grid for their documents."""
    populated = []
    for day in ScheduleGrid.from_list(schedule).days:
        slots = []
        for slot in day.slots:
            course = course_by_id.get(slot.course_id)
            member = staff_by_id.get(slot.staff_id)
            slots.append({
                'time': {'start': slot.start, 'end': slot.end},
                'course': course.to_json() if course else None,
                'staff': {'id': member.id, 'name': member.name, 'email': member.email} if member else None,
            })
        populated.append({'day': day.day, 'slots': slots})
    return populated


def populate_timetable(timetable: Timetable, courses: Sequence[Course], staff: Sequence[Staff]) -> dict:
    data = timetable.to_json()
    data['schedule'] = populate_schedule(
        timetable.schedule,
        {c.id: c for c in courses},
        {s.id: s for s in staff},
    )
    return data


def export_schedule_csv(timetable: Timetable, courses: Sequence[Course], staff: Sequence[Staff]) -> str:
    course_by_id = {c.id: c for c in courses}
    staff_by_id = {s.id: s for s in staff}

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['Day', 'Start', 'End', 'Course Code', 'Course Name', 'Staff', 'Staff Email'])
    for day in ScheduleGrid.from_list(timetable.schedule).days:
        for slot in day.slots:
            course = course_by_id.get(slot.course_id)
            member = staff_by_id.get(slot.staff_id)
            writer.writerow([
                day.day,
                slot.start or '',
                slot.end or '',
                course.code if course else '',
                course.name if course else '',
                member.name if member else '',
                member.email if member else '',
            ])
    return output.getvalue()
