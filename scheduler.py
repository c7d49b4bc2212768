import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

DAYS_OF_WEEK = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']

# Courses and staff default to every day except the last one
DEFAULT_DAYS = DAYS_OF_WEEK[:-1]

# Canonical one-hour spans; a timetable uses the first `hours_per_day` of them
DEFAULT_TIME_SLOTS = [
    ('08:00', '09:00'),
    ('09:00', '10:00'),
    ('10:00', '11:00'),
    ('11:00', '12:00'),
    ('12:00', '13:00'),
    ('13:00', '14:00'),
    ('14:00', '15:00'),
    ('15:00', '16:00'),
]

STAFF_DAYS_WORKING = 'working_days'
STAFF_DAYS_ANY = 'any'


class ScheduleIntegrityError(RuntimeError):
    """Raised when a generated grid breaks an invariant the algorithm should uphold."""


@dataclass(frozen=True)
class CourseDemand:
    """A course as seen by the scheduler: how many hours it needs and where it prefers them."""

    id: object
    name: str
    code: str
    hours_per_week: int
    preferred_days: Tuple[str, ...] = ()

    @classmethod
    def from_model(cls, course):
        return cls(
            id=course.id,
            name=getattr(course, 'name', '') or '',
            code=getattr(course, 'code', '') or '',
            hours_per_week=int(getattr(course, 'hours_per_week', 0) or 0),
            preferred_days=tuple(getattr(course, 'preferred_days', None) or ()),
        )


@dataclass(frozen=True)
class StaffProfile:
    """A staff member's teaching assignment and availability."""

    id: object
    name: str
    course_ids: Tuple[object, ...] = ()
    available_days: Tuple[str, ...] = ()
    available_hours_per_day: Optional[int] = None

    @classmethod
    def from_model(cls, staff):
        hours = getattr(staff, 'available_hours_per_day', None)
        return cls(
            id=staff.id,
            name=getattr(staff, 'name', '') or '',
            course_ids=tuple(getattr(staff, 'courses', None) or ()),
            available_days=tuple(getattr(staff, 'available_days', None) or ()),
            available_hours_per_day=int(hours) if hours else None,
        )


@dataclass
class Slot:
    start: str
    end: str
    course_id: object = None
    staff_id: object = None

    @property
    def is_assigned(self) -> bool:
        return self.course_id is not None

    def assign(self, course_id, staff_id):
        self.course_id = course_id
        self.staff_id = staff_id

    def to_dict(self):
        return {
            'time': {'start': self.start, 'end': self.end},
            'course': self.course_id,
            'staff': self.staff_id,
        }


@dataclass
class DaySchedule:
    day: str
    slots: List[Slot] = field(default_factory=list)

    def holds_course_next_to(self, index: int, course_id) -> bool:
        """True if the slot before or after `index` already carries `course_id`."""
        for neighbour in (index - 1, index + 1):
            if 0 <= neighbour < len(self.slots) and self.slots[neighbour].course_id == course_id:
                return True
        return False

    def to_dict(self):
        return {'day': self.day, 'slots': [slot.to_dict() for slot in self.slots]}


@dataclass
class ScheduleGrid:
    days: List[DaySchedule] = field(default_factory=list)

    def day(self, name: str) -> Optional[DaySchedule]:
        for day_schedule in self.days:
            if day_schedule.day == name:
                return day_schedule
        return None

    def assigned_slots(self):
        for day_schedule in self.days:
            for index, slot in enumerate(day_schedule.slots):
                if slot.is_assigned or slot.staff_id is not None:
                    yield day_schedule.day, index, slot

    def to_list(self) -> List[dict]:
        """Storage shape: one dict per day, each with its list of slot dicts."""
        return [day_schedule.to_dict() for day_schedule in self.days]

    @classmethod
    def from_list(cls, data):
        days = []
        for day_data in data or []:
            slots = []
            for slot_data in day_data.get('slots', []):
                time = slot_data.get('time') or {}
                slots.append(Slot(
                    start=time.get('start'),
                    end=time.get('end'),
                    course_id=slot_data.get('course'),
                    staff_id=slot_data.get('staff'),
                ))
            days.append(DaySchedule(day=day_data.get('day'), slots=slots))
        return cls(days=days)


@dataclass(frozen=True)
class Diagnostic:
    """Advisory note produced by a generation run. Never raised."""

    kind: str  # no_staff | shortfall | slots_truncated | overload
    message: str
    course_id: object = None
    staff_id: object = None
    required: int = 0
    assigned: int = 0

    @property
    def shortfall(self) -> int:
        return max(self.required - self.assigned, 0)

    def to_dict(self):
        return {
            'kind': self.kind,
            'message': self.message,
            'course_id': self.course_id,
            'staff_id': self.staff_id,
            'required': self.required,
            'assigned': self.assigned,
            'shortfall': self.shortfall,
        }


@dataclass
class GenerationResult:
    grid: ScheduleGrid
    diagnostics: List[Diagnostic] = field(default_factory=list)
    course_hours: Dict[object, int] = field(default_factory=dict)
    staff_hours: Dict[object, int] = field(default_factory=dict)
    staff_schedules: Dict[object, Dict[str, List[dict]]] = field(default_factory=dict)

    @property
    def warnings(self) -> List[str]:
        return [d.message for d in self.diagnostics]

    def diagnostics_for(self, course_id) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.course_id == course_id]

    def to_dict(self):
        return {
            'success': True,
            'schedule': self.grid.to_list(),
            'diagnostics': [d.to_dict() for d in self.diagnostics],
            'warnings': self.warnings,
            'course_hours': {str(k): v for k, v in self.course_hours.items()},
            'staff_hours': {str(k): v for k, v in self.staff_hours.items()},
            'staff_schedules': {str(k): v for k, v in self.staff_schedules.items()},
        }


# --------------------------------------------------------------------- #
# Grid construction
# --------------------------------------------------------------------- #
def build_grid(working_days: Sequence[str], hours_per_day: int) -> Tuple[ScheduleGrid, List[Diagnostic]]:
    """Build an empty grid with one day per working day and `hours_per_day` slots each.

    Requests beyond the canonical slot list are truncated, not rejected; the
    truncation is reported as a `slots_truncated` diagnostic.
    """
    diagnostics = []
    time_slots = DEFAULT_TIME_SLOTS[:max(hours_per_day, 0)]
    if hours_per_day > len(DEFAULT_TIME_SLOTS):
        message = (f"Requested {hours_per_day} hours per day but only "
                   f"{len(DEFAULT_TIME_SLOTS)} time slots are defined; extra hours dropped")
        logger.warning("[Scheduler] %s", message)
        diagnostics.append(Diagnostic(
            kind='slots_truncated',
            message=message,
            required=hours_per_day,
            assigned=len(DEFAULT_TIME_SLOTS),
        ))

    grid = ScheduleGrid(days=[
        DaySchedule(day=day, slots=[Slot(start=start, end=end) for start, end in time_slots])
        for day in working_days
    ])
    return grid, diagnostics


# --------------------------------------------------------------------- #
# Staff capacity
# --------------------------------------------------------------------- #
def staff_capacity(staff: StaffProfile, working_days: Sequence[str], hours_per_day: int) -> int:
    """Hours a staff member may teach in one run.

    Falls back to the timetable's `hours_per_day` and number of working days
    when the staff member leaves either field unset.
    """
    per_day = staff.available_hours_per_day or hours_per_day
    day_count = len(staff.available_days) or len(working_days)
    return per_day * day_count


class CapacityTracker:
    """Per-run assigned-hour counters. Build a new one for every generation run."""

    def __init__(self, staff: Sequence[StaffProfile], working_days: Sequence[str], hours_per_day: int,
                 default_staff_days: str = STAFF_DAYS_WORKING):
        if default_staff_days not in (STAFF_DAYS_WORKING, STAFF_DAYS_ANY):
            raise ValueError(f"Unknown default_staff_days option: {default_staff_days!r}")
        self.capacity = {}
        self.available_days = {}
        self.assigned_hours = {}
        for member in staff:
            self.capacity[member.id] = staff_capacity(member, working_days, hours_per_day)
            if member.available_days:
                self.available_days[member.id] = frozenset(member.available_days)
            elif default_staff_days == STAFF_DAYS_WORKING:
                self.available_days[member.id] = frozenset(working_days)
            else:
                # Unrestricted
                self.available_days[member.id] = None
            self.assigned_hours[member.id] = 0

    def is_available(self, staff_id, day: str) -> bool:
        if staff_id not in self.capacity:
            return False
        days = self.available_days[staff_id]
        if days is not None and day not in days:
            return False
        return self.assigned_hours[staff_id] < self.capacity[staff_id]

    def first_available(self, staff_ids: Sequence, day: str):
        for staff_id in staff_ids:
            if self.is_available(staff_id, day):
                return staff_id
        return None

    def record(self, staff_id):
        self.assigned_hours[staff_id] += 1


# --------------------------------------------------------------------- #
# Course ordering and search helpers
# --------------------------------------------------------------------- #
def prioritize_courses(courses: Sequence[CourseDemand]) -> List[CourseDemand]:
    # sorted() is stable, so ties keep their input order
    return sorted(courses, key=lambda c: c.hours_per_week, reverse=True)


def qualified_staff_map(staff: Sequence[StaffProfile]) -> Dict[object, List[object]]:
    """course id -> staff ids able to teach it, in staff input order."""
    mapping = defaultdict(list)
    for member in staff:
        for course_id in member.course_ids:
            if member.id not in mapping[course_id]:
                mapping[course_id].append(member.id)
    return dict(mapping)


def search_days(course: CourseDemand, working_days: Sequence[str]) -> List[str]:
    """Preferred days that are also working days, else every working day."""
    days = []
    for day in course.preferred_days:
        if day in working_days and day not in days:
            days.append(day)
    return days or list(working_days)


# --------------------------------------------------------------------- #
# Integrity checks and reporting
# --------------------------------------------------------------------- #
def verify_grid(grid: ScheduleGrid, courses: Sequence[CourseDemand], qualified: Dict[object, List[object]],
                tracker: CapacityTracker):
    """Raise ScheduleIntegrityError if the grid breaks an assignment invariant."""
    required = {course.id: course.hours_per_week for course in courses}
    course_hours = defaultdict(int)
    staff_hours = defaultdict(int)

    for day, index, slot in grid.assigned_slots():
        where = f"{day} slot {index + 1}"
        if slot.course_id is None or slot.staff_id is None:
            raise ScheduleIntegrityError(f"Half-filled slot at {where}: course={slot.course_id} staff={slot.staff_id}")
        if slot.staff_id not in qualified.get(slot.course_id, []):
            raise ScheduleIntegrityError(f"Staff {slot.staff_id} does not teach course {slot.course_id} ({where})")
        course_hours[slot.course_id] += 1
        staff_hours[slot.staff_id] += 1

    for staff_id, hours in staff_hours.items():
        if hours > tracker.capacity.get(staff_id, 0):
            raise ScheduleIntegrityError(
                f"Staff {staff_id} assigned {hours} hours, capacity is {tracker.capacity.get(staff_id, 0)}")
        if hours != tracker.assigned_hours.get(staff_id):
            raise ScheduleIntegrityError(
                f"Staff {staff_id} counter drifted: grid has {hours}, tracker has {tracker.assigned_hours.get(staff_id)}")

    for course_id, hours in course_hours.items():
        if hours > required.get(course_id, 0):
            raise ScheduleIntegrityError(
                f"Course {course_id} assigned {hours} hours but only needs {required.get(course_id, 0)}")


def build_staff_schedules(grid: ScheduleGrid, course_by_id: Dict[object, CourseDemand]):
    """Per-staff daily teaching lists, ordered by slot."""
    schedules = defaultdict(lambda: defaultdict(list))
    for day, index, slot in grid.assigned_slots():
        course = course_by_id.get(slot.course_id)
        schedules[slot.staff_id][day].append({
            'period': index + 1,
            'time': f"{slot.start}-{slot.end}",
            'course_id': slot.course_id,
            'course': course.code if course else None,
        })
    return {staff_id: dict(days) for staff_id, days in schedules.items()}


# --------------------------------------------------------------------- #
# Generator
# --------------------------------------------------------------------- #
class TimetableGenerator:
    """
    Greedy, non-backtracking timetable filler.

    Courses are placed one at a time, largest weekly demand first. For each
    course the generator sweeps its search days slot by slot, giving each free
    slot to the first qualified staff member who still has capacity on that
    day. Sweeps repeat until the course is satisfied or a sweep places
    nothing. Courses that cannot be fully placed are reported as diagnostics,
    never as errors.

    The result depends only on the inputs and their order: staff are tried in
    the order given and courses with equal demand keep their input order.
    Callers wanting repeatable grids must supply courses and staff in a stable
    order.

    Options (config dict):
        allow_consecutive_same_course: when False a course never sits in two
            adjacent slots of the same day. A free slot is skipped if the slot
            before or after it already holds the course, whether that
            neighbour was filled earlier in this sweep or in a previous one.
            This is stricter than remembering only the last slot placed,
            which forgets adjacency once the scan crosses an occupied slot.
            Default True.
        spread_across_days: when True a sweep places at most one hour per day
            before moving on to the next search day. Default True.
        default_staff_days: 'working_days' or 'any'; the days a staff member
            without explicit availability may teach. Default 'working_days'.
        overload_threshold: assigned hours at which a staff member is flagged.
            Default 40.
    """

    def __init__(self, config: dict = None):
        self.config = config or {}
        self.allow_consecutive_same_course = self.config.get('allow_consecutive_same_course', True)
        self.spread_across_days = self.config.get('spread_across_days', True)
        self.default_staff_days = self.config.get('default_staff_days', STAFF_DAYS_WORKING)
        self.overload_threshold = self.config.get('overload_threshold', 40)

    # --------------------------------------------------------------------- #
    # Public API
    # --------------------------------------------------------------------- #
    def generate(self, courses: Sequence[CourseDemand], staff: Sequence[StaffProfile],
                 working_days: Sequence[str], hours_per_day: int) -> GenerationResult:
        working_days = list(working_days)
        grid, diagnostics = build_grid(working_days, hours_per_day)
        tracker = CapacityTracker(staff, working_days, hours_per_day, self.default_staff_days)
        qualified = qualified_staff_map(staff)

        logger.debug("[Scheduler] courses=%d staff=%d days=%s hours_per_day=%d",
                     len(courses), len(staff), working_days, hours_per_day)

        course_hours = {}
        for course in prioritize_courses(courses):
            staff_ids = qualified.get(course.id, [])
            if not staff_ids:
                message = f"No staff assigned to course: {course.name} (0/{course.hours_per_week} hours)"
                logger.warning("[Scheduler] %s", message)
                diagnostics.append(Diagnostic(
                    kind='no_staff',
                    message=message,
                    course_id=course.id,
                    required=course.hours_per_week,
                    assigned=0,
                ))
                course_hours[course.id] = 0
                continue

            assigned = self._place_course(course, staff_ids, grid, tracker, working_days)
            course_hours[course.id] = assigned

            if assigned < course.hours_per_week:
                message = (f"Could only assign {assigned}/{course.hours_per_week} hours for course: "
                           f"{course.name} ({course.hours_per_week - assigned} short)")
                logger.warning("[Scheduler] %s", message)
                diagnostics.append(Diagnostic(
                    kind='shortfall',
                    message=message,
                    course_id=course.id,
                    required=course.hours_per_week,
                    assigned=assigned,
                ))

        try:
            verify_grid(grid, courses, qualified, tracker)
        except ScheduleIntegrityError:
            logger.exception("[Scheduler] Generated grid failed integrity check")
            raise

        diagnostics.extend(self._detect_overload(staff, tracker))
        course_by_id = {course.id: course for course in courses}

        return GenerationResult(
            grid=grid,
            diagnostics=diagnostics,
            course_hours=course_hours,
            staff_hours=dict(tracker.assigned_hours),
            staff_schedules=build_staff_schedules(grid, course_by_id),
        )

    # --------------------------------------------------------------------- #
    # Placement
    # --------------------------------------------------------------------- #
    def _place_course(self, course: CourseDemand, staff_ids, grid: ScheduleGrid, tracker: CapacityTracker,
                      working_days) -> int:
        days = search_days(course, working_days)
        needed = course.hours_per_week
        hours_assigned = 0

        while hours_assigned < needed:
            placed_this_pass = 0

            for day in days:
                if hours_assigned >= needed:
                    break
                day_schedule = grid.day(day)
                if day_schedule is None:
                    continue

                for index, slot in enumerate(day_schedule.slots):
                    if hours_assigned >= needed:
                        break
                    if slot.is_assigned:
                        continue
                    if not self.allow_consecutive_same_course and day_schedule.holds_course_next_to(index, course.id):
                        continue

                    staff_id = tracker.first_available(staff_ids, day)
                    if staff_id is None:
                        continue

                    slot.assign(course.id, staff_id)
                    tracker.record(staff_id)
                    hours_assigned += 1
                    placed_this_pass += 1
                    logger.debug("[Scheduler] %s -> %s %s-%s (staff %s)",
                                 course.code or course.name, day, slot.start, slot.end, staff_id)

                    if self.spread_across_days:
                        break

            # Nothing placed means nothing further can be placed
            if not placed_this_pass:
                break

        return hours_assigned

    def _detect_overload(self, staff: Sequence[StaffProfile], tracker: CapacityTracker) -> List[Diagnostic]:
        alerts = []
        if not self.overload_threshold:
            return alerts
        for member in staff:
            hours = tracker.assigned_hours.get(member.id, 0)
            if hours >= self.overload_threshold:
                message = (f"Overload alert: {member.name} assigned {hours} hours/week "
                           f"(threshold: {self.overload_threshold}h)")
                logger.warning("[Scheduler] %s", message)
                alerts.append(Diagnostic(
                    kind='overload',
                    message=message,
                    staff_id=member.id,
                    required=self.overload_threshold,
                    assigned=hours,
                ))
        return alerts
