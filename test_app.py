"""
Unit tests for the REST API: response shapes and how errors map to status codes
MongoDB and Redis are replaced with mocks; no server is needed.
"""
import unittest
from unittest.mock import MagicMock, patch

from pymongo.errors import DuplicateKeyError

import models
from scheduler import ScheduleIntegrityError

# The app connects to MongoDB at import time
with patch('models.MongoClient'):
    from app import app


COURSES = [
    {'id': 1, 'name': 'Algebra', 'code': 'MATH101', 'hours_per_week': 2, 'preferred_days': ['Monday']},
    {'id': 2, 'name': 'Poetry', 'code': 'ENG201', 'hours_per_week': 1, 'preferred_days': ['Monday']},
]
STAFF = [
    {'id': 10, 'name': 'Ada', 'email': 'ada@example.edu', 'courses': [1],
     'available_days': ['Monday'], 'available_hours_per_day': 6},
]
TIMETABLE = {'id': 1, 'name': 'Autumn', 'working_days': ['Monday'], 'hours_per_day': 2,
             'version': 0, 'schedule': []}


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        self.collections = {}
        fake_db = MagicMock()
        fake_db.__getitem__.side_effect = self.collection
        for patcher in (patch.object(models.db, '_db', fake_db), patch('cache.get_redis', return_value=None)):
            patcher.start()
            self.addCleanup(patcher.stop)

        self.stub_records('course', COURSES)
        self.stub_records('staff', STAFF)
        self.stub_records('timetable', [TIMETABLE])
        self.client = app.test_client()

    def collection(self, name):
        if name not in self.collections:
            self.collections[name] = MagicMock(name=name)
        return self.collections[name]

    def stub_records(self, name, docs):
        by_id = {doc['id']: doc for doc in docs}
        coll = self.collection(name)
        coll.find.return_value.sort.return_value = [dict(doc) for doc in docs]

        def find_one(filter_doc, **kwargs):
            doc = by_id.get(filter_doc.get('id'))
            return dict(doc) if doc else None

        coll.find_one.side_effect = find_one


class TestGenerate(ApiTestCase):

    def test_generate_returns_timetable_and_diagnostics(self):
        self.collection('timetable').find_one_and_update.return_value = {'id': 1}

        response = self.client.post('/api/timetables/1/generate')

        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertTrue(body['success'])
        self.assertEqual([d['kind'] for d in body['diagnostics']], ['no_staff'])
        self.assertEqual(len(body['warnings']), 1)
        self.assertEqual(body['course_hours'], {'1': 2, '2': 0})
        self.assertEqual(body['staff_hours'], {'10': 2})
        self.assertEqual(len(body['staff_schedules']['10']['Monday']), 2)

        slots = body['timetable']['schedule'][0]['slots']
        self.assertEqual([s['course']['code'] for s in slots], ['MATH101', 'MATH101'])
        self.assertEqual(slots[0]['staff']['name'], 'Ada')
        self.assertEqual(body['timetable']['version'], 1)

        filter_doc, _ = self.collection('timetable').find_one_and_update.call_args[0]
        self.assertEqual(filter_doc, {'id': 1, 'version': {'$in': [0, None]}})

    def test_concurrent_write_returns_409(self):
        self.collection('timetable').find_one_and_update.return_value = None

        response = self.client.post('/api/timetables/1/generate')

        self.assertEqual(response.status_code, 409)
        self.assertFalse(response.get_json()['success'])
        self.assertIn('modified by another request', response.get_json()['error'])

    def test_integrity_fault_returns_500(self):
        fault = ScheduleIntegrityError('Monday slot 0 holds a course but no staff')
        with patch('app.generate_schedule', side_effect=fault):
            response = self.client.post('/api/timetables/1/generate')

        self.assertEqual(response.status_code, 500)
        self.assertIn('Internal scheduling error', response.get_json()['error'])

    def test_unknown_timetable_returns_404(self):
        response = self.client.post('/api/timetables/99/generate')

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()['error'], 'Timetable not found')


class TestStaffRoutes(ApiTestCase):

    def test_assigning_a_course_twice_returns_400(self):
        response = self.client.post('/api/staff/10/assign-course', json={'course_id': 1})

        self.assertEqual(response.status_code, 400)
        self.assertIn('already assigned', response.get_json()['error'])
        self.collection('staff').replace_one.assert_not_called()

    def test_assign_course_returns_course_documents(self):
        response = self.client.post('/api/staff/10/assign-course', json={'course_id': 2})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([c['code'] for c in response.get_json()['courses']], ['MATH101', 'ENG201'])
        # Storage keeps plain ids
        _, stored = self.collection('staff').replace_one.call_args[0]
        self.assertEqual(stored['courses'], [1, 2])

    def test_assign_unknown_course_returns_404(self):
        response = self.client.post('/api/staff/10/assign-course', json={'course_id': 42})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()['error'], 'Course not found')

    def test_list_staff_populates_courses(self):
        response = self.client.get('/api/staff')

        self.assertEqual(response.status_code, 200)
        member = response.get_json()[0]
        self.assertEqual(member['courses'][0]['name'], 'Algebra')

    def test_missing_staff_returns_404(self):
        response = self.client.get('/api/staff/99')

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {'success': False, 'error': 'Staff not found'})


class TestCourseRoutes(ApiTestCase):

    def test_invalid_payload_returns_400(self):
        response = self.client.post('/api/courses', json={'name': 'Algebra'})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()['error'], 'code is required')

    def test_duplicate_key_returns_400(self):
        self.collection('__counters__').find_one_and_update.return_value = {'_id': 'course', 'seq': 3}
        self.collection('course').replace_one.side_effect = DuplicateKeyError('E11000 duplicate key error')

        response = self.client.post('/api/courses', json={'name': 'Logic', 'code': 'PHIL101', 'hours_per_week': 2})

        self.assertEqual(response.status_code, 400)
        self.assertIn('already exists', response.get_json()['error'])

    def test_create_course(self):
        self.collection('__counters__').find_one_and_update.return_value = {'_id': 'course', 'seq': 3}

        response = self.client.post('/api/courses', json={'name': 'Logic', 'code': 'PHIL101', 'hours_per_week': 2})

        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertEqual(body['id'], 3)
        self.assertEqual(body['preferred_days'], ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday'])


if __name__ == '__main__':
    unittest.main(verbosity=2)
