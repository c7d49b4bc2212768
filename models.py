import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from flask import abort
from pymongo import MongoClient, ASCENDING, DESCENDING, ReplaceOne, ReturnDocument

from scheduler import DEFAULT_DAYS, build_grid

logger = logging.getLogger(__name__)


class StaleTimetableError(RuntimeError):
    """Another request rewrote the timetable's grid since it was loaded."""


def utcnow():
    return datetime.now(timezone.utc)


class _Session:
    """Collects pending writes and flushes them as one bulk_write per collection."""

    def __init__(self, db):
        self._db = db
        self._added = []

    def add(self, obj):
        self._added.append(obj)

    def flush(self):
        ops = {}  # {collection_name: [operations]}

        for obj in self._added:
            coll_name = _get_collection_name(obj.__class__)
            if getattr(obj, 'id', None) is None:
                obj.id = get_next_id(self._db, coll_name)
            data = obj.to_dict()
            # _id is immutable once the document exists
            data.pop('_id', None)
            ops.setdefault(coll_name, []).append(ReplaceOne({'id': obj.id}, data, upsert=True))

        for coll_name, operations in ops.items():
            if operations:
                try:
                    # ordered=False keeps going past a single failing document
                    self._db[coll_name].bulk_write(operations, ordered=False)
                except Exception as e:
                    logger.error("[MongoDB] Bulk write error in %s: %s", coll_name, e)
                    raise

    def commit(self):
        try:
            self.flush()
        finally:
            self._added.clear()

    def rollback(self):
        # No multi-document transactions; just drop what is pending
        self._added.clear()


class _DB:
    def __init__(self):
        self.client: MongoClient | None = None
        self._db = None
        self.session = None

    def init_app(self, app):
        uri = app.config.get('MONGO_URI') or 'mongodb://localhost:27017'
        dbname = app.config.get('MONGO_DBNAME', 'timetable')
        timeout = int(app.config.get('MONGO_TIMEOUT_MS', 8000))
        try:
            self.client = MongoClient(uri, serverSelectionTimeoutMS=timeout)
            # Force DNS & initial server selection
            self.client.admin.command('ping')
        except Exception as e:
            logger.warning("[Mongo Init] Primary URI failed (%s); falling back to localhost.", e)
            self.client = MongoClient('mongodb://localhost:27017', serverSelectionTimeoutMS=timeout)
        self._db = self.client[dbname]
        self.session = _Session(self._db)

    def create_all(self):
        if self._db is None:
            return
        try:
            create_indexes(self._db)
            logger.info("[MongoDB] Indexes created successfully.")
        except Exception as e:
            logger.error("[MongoDB] Index creation failed: %s", e)


db = _DB()


def create_indexes(mongo_db):
    mongo_db['course'].create_index('id', unique=True)
    mongo_db['course'].create_index('code', unique=True)
    mongo_db['staff'].create_index('id', unique=True)
    mongo_db['staff'].create_index('email', unique=True)
    mongo_db['staff'].create_index([('courses', ASCENDING)])
    mongo_db['timetable'].create_index('id', unique=True)
    mongo_db['timetable'].create_index([('updated_at', DESCENDING)])


def _get_collection_name(cls):
    return cls.__name__.lower()


def get_next_id(mongo_db, name: str) -> int:
    counters = mongo_db['__counters__']
    res = counters.find_one_and_update({'_id': name}, {'$inc': {'seq': 1}}, upsert=True,
                                       return_document=ReturnDocument.AFTER)
    return int(res['seq'])


class ModelMeta(type):
    def __getattr__(cls, item):
        # `Model.query` hands out a fresh Query so calls never share filters
        if item == 'query':
            return Query(cls)
        raise AttributeError(item)


class Query:
    def __init__(self, model_cls):
        self.model_cls = model_cls
        self._filter = {}
        self._sort = None

    @property
    def collection(self):
        return db._db[_get_collection_name(self.model_cls)]

    def filter_by(self, **kwargs):
        self._filter.update(kwargs)
        return self

    def order_by(self, *fields):
        sorts = []
        for name in fields:
            if name.startswith('-'):
                sorts.append((name[1:], DESCENDING))
            else:
                sorts.append((name, ASCENDING))
        self._sort = sorts or None
        return self

    def all(self):
        cursor = self.collection.find(self._filter)
        if self._sort:
            cursor = cursor.sort(self._sort)
        return [self.model_cls(**doc) for doc in cursor]

    def first(self):
        doc = self.collection.find_one(self._filter, sort=self._sort)
        if not doc:
            return None
        return self.model_cls(**doc)

    def get(self, id_value):
        doc = self.collection.find_one({'id': id_value})
        if not doc:
            return None
        return self.model_cls(**doc)

    def get_or_404(self, id_value):
        obj = self.get(id_value)
        if obj is None:
            abort(404, description=f'{self.model_cls.__name__} not found')
        return obj


class BaseModel(metaclass=ModelMeta):
    defaults: Dict[str, Any] = {}

    def __init__(self, **kwargs):
        for k, v in kwargs.items():
            setattr(self, k, v)
        for k, v in self.defaults.items():
            if not hasattr(self, k):
                setattr(self, k, list(v) if isinstance(v, (list, tuple)) else v)
        if not hasattr(self, 'created_at'):
            self.created_at = utcnow()

    def update(self, **fields):
        for k, v in fields.items():
            setattr(self, k, v)
        return self

    def to_dict(self) -> Dict[str, Any]:
        d = self.__dict__.copy()
        if '_id' in d and d['_id'] is not None:
            d['_id'] = str(d['_id'])
        return d

    def to_json(self) -> Dict[str, Any]:
        d = self.to_dict()
        d.pop('_id', None)
        for key in ('created_at', 'updated_at'):
            if isinstance(d.get(key), datetime):
                d[key] = d[key].isoformat()
        return d

    def _save(self, mongo_db):
        coll = mongo_db[_get_collection_name(self.__class__)]
        if getattr(self, 'id', None) is None:
            self.id = get_next_id(mongo_db, _get_collection_name(self.__class__))
        data = self.to_dict()
        data.pop('_id', None)
        coll.replace_one({'id': self.id}, data, upsert=True)

    def save(self):
        self._save(db._db)

    def delete(self):
        db._db[_get_collection_name(self.__class__)].delete_one({'id': self.id})


# --- Directory ---


def clear_slots_referencing(field: str, record_id):
    """Empty every stored slot whose `field` ('course' or 'staff') points at a deleted record.

    The whole slot is cleared so no slot is left with a course but no staff
    or the other way round. Affected timetables get a new version, so an
    in-flight generation or edit loaded before the delete is rejected as stale.
    """
    return db._db['timetable'].update_many(
        {f'schedule.slots.{field}': record_id},
        {
            '$set': {
                'schedule.$[].slots.$[slot].course': None,
                'schedule.$[].slots.$[slot].staff': None,
                'updated_at': utcnow(),
            },
            '$inc': {'version': 1},
        },
        array_filters=[{f'slot.{field}': record_id}],
    )


class Course(BaseModel):
    defaults = {
        'name': None,
        'code': None,
        'hours_per_week': 1,
        'preferred_days': DEFAULT_DAYS,
    }

    def delete(self):
        super().delete()
        # Nobody can keep teaching a course that no longer exists
        db._db['staff'].update_many({'courses': self.id}, {'$pull': {'courses': self.id}})
        clear_slots_referencing('course', self.id)

    def __repr__(self):
        return f'<Course {getattr(self, "code", None)} {getattr(self, "hours_per_week", None)}h>'


class Staff(BaseModel):
    defaults = {
        'name': None,
        'email': None,
        'designation': None,
        'courses': [],
        'available_days': DEFAULT_DAYS,
        'available_hours_per_day': 6,
    }

    def assign_course(self, course_id: int):
        """Add a course to this staff member's teaching list. Duplicates are rejected."""
        if course_id in self.courses:
            raise ValueError('Course already assigned to this staff')
        self.courses = list(self.courses) + [course_id]
        return self

    def remove_course(self, course_id: int):
        self.courses = [c for c in self.courses if c != course_id]
        return self

    def delete(self):
        super().delete()
        clear_slots_referencing('staff', self.id)

    def __repr__(self):
        return f'<Staff {getattr(self, "name", None)} <{getattr(self, "email", None)}>>'


# --- Timetable store ---


class Timetable(BaseModel):
    defaults = {
        'name': None,
        'description': '',
        'working_days': DEFAULT_DAYS,
        'hours_per_day': 6,
        'schedule': [],
        'version': 0,
    }

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not hasattr(self, 'updated_at'):
            self.updated_at = self.created_at

    def reset_schedule(self):
        """Replace the grid with an empty one shaped by the current settings."""
        grid, _ = build_grid(self.working_days, self.hours_per_day)
        self.schedule = grid.to_list()
        return self

    def _write_versioned(self, fields: Dict[str, Any], expected_version: int):
        """
        Apply `fields` only if the stored version still equals `expected_version`.

        Every write to an existing timetable goes through here, so two
        requests racing on the same timetable cannot silently overwrite each
        other: the loser gets StaleTimetableError.
        """
        # Documents written before versioning have no version field
        version_filter = {'$in': [0, None]} if expected_version == 0 else expected_version
        now = utcnow()
        update = dict(fields, updated_at=now, version=expected_version + 1)
        doc = db._db['timetable'].find_one_and_update(
            {'id': self.id, 'version': version_filter},
            {'$set': update},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise StaleTimetableError(f'Timetable {self.id} was modified by another request; reload and retry')
        self.updated_at = now
        self.version = expected_version + 1
        return doc

    def save(self):
        if getattr(self, 'id', None) is None:
            super().save()
            return
        data = self.to_dict()
        for key in ('_id', 'id', 'version', 'updated_at'):
            data.pop(key, None)
        self._write_versioned(data, int(self.version or 0))

    def replace_schedule(self, schedule: List[dict], expected_version: int):
        """Store a freshly generated grid in place of the old one."""
        self._write_versioned({'schedule': schedule}, expected_version)
        self.schedule = schedule
        return self

    def set_slot(self, day_index: int, slot_index: int, course_id, staff_id):
        """Hand-edit one slot. Clearing a slot means passing no course and no staff."""
        if day_index < 0 or day_index >= len(self.schedule):
            raise ValueError('Invalid day index')
        slots = self.schedule[day_index].get('slots', [])
        if slot_index < 0 or slot_index >= len(slots):
            raise ValueError('Invalid slot index')
        if bool(course_id) != bool(staff_id):
            raise ValueError('A slot needs both a course and a staff member, or neither')

        prefix = f'schedule.{day_index}.slots.{slot_index}'
        self._write_versioned({
            f'{prefix}.course': course_id or None,
            f'{prefix}.staff': staff_id or None,
        }, int(self.version or 0))
        slots[slot_index]['course'] = course_id or None
        slots[slot_index]['staff'] = staff_id or None
        return self

    def __repr__(self):
        return f'<Timetable {getattr(self, "name", None)} v{getattr(self, "version", 0)}>'
