import io
import logging
import os
import time
from datetime import datetime

from dotenv import load_dotenv
from flask import Flask, g, jsonify, make_response, request, send_file
from pyinstrument import Profiler
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException

from cache import cache_response, invalidate_cache
from csv_processor import (
    COURSE_COLUMNS,
    STAFF_COLUMNS,
    course_payload_from_row,
    get_missing_columns,
    parse_rows,
    process_upload_stream,
    staff_payload_from_row,
)
from models import db, Course, Staff, Timetable, StaleTimetableError
from scheduler import ScheduleIntegrityError, TimetableGenerator
from timetable_service import (
    export_schedule_csv,
    generate_schedule,
    generator_config_from_app,
    load_directory,
    populate_staff,
    populate_timetable,
)
from validators import (
    ValidationError,
    normalize_comma_list,
    parse_id,
    validate_course_payload,
    validate_staff_payload,
    validate_timetable_payload,
)

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)


def env_flag(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


app = Flask(__name__)
app.config['MONGO_URI'] = os.getenv('MONGO_URI')
app.config['MONGO_DBNAME'] = os.getenv('MONGO_DBNAME', 'timetable')
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'fallback-secret-key')
app.config['REDIS_URL'] = os.getenv('REDIS_URL', 'redis://localhost:6379/1')
app.config['CACHE_TTL'] = int(os.getenv('CACHE_TTL', 300))
app.config['SCHEDULER_ALLOW_CONSECUTIVE'] = env_flag('SCHEDULER_ALLOW_CONSECUTIVE', True)
app.config['SCHEDULER_SPREAD_ACROSS_DAYS'] = env_flag('SCHEDULER_SPREAD_ACROSS_DAYS', True)
app.config['SCHEDULER_DEFAULT_STAFF_DAYS'] = os.getenv('SCHEDULER_DEFAULT_STAFF_DAYS', 'working_days')
app.config['SCHEDULER_OVERLOAD_THRESHOLD'] = int(os.getenv('SCHEDULER_OVERLOAD_THRESHOLD', 40))


# Profiling Middleware
@app.before_request
def before_request():
    g.start_time = time.time()

    if 'profile' in request.args:
        g.profiler = Profiler()
        g.profiler.start()


@app.after_request
def after_request(response):
    if 'start_time' in g:
        elapsed = time.time() - g.start_time
        app.logger.info(f"[{request.remote_addr}] {request.method} {request.path} {response.status_code} {elapsed:.3f}s")
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"

    if 'profiler' in g:
        g.profiler.stop()
        return make_response(g.profiler.output_html())

    return response


# Error handling
def error_response(message, status):
    return jsonify({'success': False, 'error': message}), status


@app.errorhandler(ValidationError)
def handle_validation_error(exc):
    return error_response(str(exc), 400)


@app.errorhandler(DuplicateKeyError)
def handle_duplicate_key(exc):
    return error_response('A record with the same code or email already exists.', 400)


@app.errorhandler(StaleTimetableError)
def handle_stale_timetable(exc):
    return error_response(str(exc), 409)


@app.errorhandler(ScheduleIntegrityError)
def handle_integrity_error(exc):
    app.logger.error(f"Schedule integrity fault: {exc}")
    return error_response(f'Internal scheduling error: {exc}', 500)


@app.errorhandler(HTTPException)
def handle_http_error(exc):
    return error_response(exc.description, exc.code)


db.init_app(app)

with app.app_context():
    db.create_all()


# Health Check Endpoint (for load balancers, Docker, monitoring)
@app.route('/health')
def health_check():
    try:
        db._db.command('ping')
        return jsonify({
            'status': 'healthy',
            'service': 'Timetable Scheduler',
            'database': 'connected',
            'timestamp': datetime.now().isoformat()
        }), 200
    except Exception as e:
        return jsonify({
            'status': 'unhealthy',
            'service': 'Timetable Scheduler',
            'database': 'disconnected',
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }), 503


# Course Management
@app.route('/api/courses')
@cache_response('courses')
def list_courses():
    return jsonify([c.to_json() for c in Course.query.order_by('id').all()])


@app.route('/api/courses/<int:course_id>')
@cache_response('courses')
def get_course(course_id):
    return jsonify(Course.query.get_or_404(course_id).to_json())


@app.route('/api/courses', methods=['POST'])
def create_course():
    data = validate_course_payload(request.get_json(silent=True))
    if Course.query.filter_by(code=data['code']).first():
        return error_response(f"Course code {data['code']} already exists.", 400)
    course = Course(**data)
    course.save()
    invalidate_cache('courses')
    return jsonify(course.to_json()), 201


@app.route('/api/courses/<int:course_id>', methods=['PUT'])
def update_course(course_id):
    course = Course.query.get_or_404(course_id)
    data = validate_course_payload(request.get_json(silent=True), partial=True)
    if 'code' in data and data['code'] != course.code:
        if Course.query.filter_by(code=data['code']).first():
            return error_response(f"Course code {data['code']} already exists.", 400)
    course.update(**data).save()
    invalidate_cache('courses', 'staff', 'timetables')
    return jsonify(course.to_json())


@app.route('/api/courses/<int:course_id>', methods=['DELETE'])
def delete_course(course_id):
    course = Course.query.get_or_404(course_id)
    course.delete()
    invalidate_cache('courses', 'staff', 'timetables')
    return jsonify({'success': True, 'message': 'Course deleted successfully'})


@app.route('/api/courses/import', methods=['POST'])
def import_courses():
    upload = request.files.get('file')
    if not upload:
        return error_response('No file uploaded', 400)

    try:
        existing = {c.code: c for c in Course.query.all()}
        created, updated, errors = 0, 0, []
        row_number = 2

        for chunk_idx, chunk in enumerate(process_upload_stream(upload)):
            if chunk_idx == 0 and chunk:
                missing = get_missing_columns(set(chunk[0].keys()), COURSE_COLUMNS)
                if missing:
                    return error_response(f'Missing columns: {", ".join(sorted(missing))}', 400)

            payloads, chunk_errors = parse_rows(chunk, course_payload_from_row, row_number)
            errors.extend(chunk_errors)
            row_number += len(chunk)

            for payload in payloads:
                course = existing.get(payload['code'])
                if course:
                    course.update(**payload)
                    updated += 1
                else:
                    course = Course(**payload)
                    existing[payload['code']] = course
                    created += 1
                db.session.add(course)

            # Commit after each chunk for better memory management
            db.session.commit()
    except ValueError as exc:
        return error_response(str(exc), 400)
    except Exception as exc:
        db.session.rollback()
        logger.exception("Course import failed")
        return error_response(f'Import failed: {exc}', 500)

    invalidate_cache('courses', 'staff', 'timetables')
    return jsonify({'success': True, 'created': created, 'updated': updated, 'errors': errors})


# Staff Management
def ensure_courses_exist(course_ids):
    missing = [cid for cid in course_ids if Course.query.get(cid) is None]
    if missing:
        raise ValidationError(f"Unknown course ids: {', '.join(str(m) for m in missing)}")


def staff_json(member):
    course_by_id = {c.id: c for c in Course.query.order_by('id').all()}
    return populate_staff(member, course_by_id)


@app.route('/api/staff')
@cache_response('staff')
def list_staff():
    course_by_id = {c.id: c for c in Course.query.order_by('id').all()}
    return jsonify([populate_staff(s, course_by_id) for s in Staff.query.order_by('id').all()])


@app.route('/api/staff/<int:staff_id>')
@cache_response('staff')
def get_staff(staff_id):
    return jsonify(staff_json(Staff.query.get_or_404(staff_id)))


@app.route('/api/staff', methods=['POST'])
def create_staff():
    data = validate_staff_payload(request.get_json(silent=True))
    ensure_courses_exist(data['courses'])
    if Staff.query.filter_by(email=data['email']).first():
        return error_response(f"Staff email {data['email']} already exists.", 400)
    member = Staff(**data)
    member.save()
    invalidate_cache('staff')
    return jsonify(staff_json(member)), 201


@app.route('/api/staff/<int:staff_id>', methods=['PUT'])
def update_staff(staff_id):
    member = Staff.query.get_or_404(staff_id)
    data = validate_staff_payload(request.get_json(silent=True), partial=True)
    if 'courses' in data:
        ensure_courses_exist(data['courses'])
    if 'email' in data and data['email'] != member.email:
        if Staff.query.filter_by(email=data['email']).first():
            return error_response(f"Staff email {data['email']} already exists.", 400)
    member.update(**data).save()
    invalidate_cache('staff', 'timetables')
    return jsonify(staff_json(member))


@app.route('/api/staff/<int:staff_id>', methods=['DELETE'])
def delete_staff(staff_id):
    member = Staff.query.get_or_404(staff_id)
    member.delete()
    invalidate_cache('staff', 'timetables')
    return jsonify({'success': True, 'message': 'Staff deleted successfully'})


@app.route('/api/staff/<int:staff_id>/assign-course', methods=['POST'])
def assign_course(staff_id):
    course_id = parse_id((request.get_json(silent=True) or {}).get('course_id'), 'course_id')
    member = Staff.query.get_or_404(staff_id)
    Course.query.get_or_404(course_id)
    try:
        member.assign_course(course_id)
    except ValueError as exc:
        return error_response(str(exc), 400)
    member.save()
    invalidate_cache('staff')
    return jsonify(staff_json(member))


@app.route('/api/staff/<int:staff_id>/remove-course', methods=['POST'])
def remove_course(staff_id):
    course_id = parse_id((request.get_json(silent=True) or {}).get('course_id'), 'course_id')
    member = Staff.query.get_or_404(staff_id)
    member.remove_course(course_id).save()
    invalidate_cache('staff')
    return jsonify(staff_json(member))


@app.route('/api/staff/import', methods=['POST'])
def import_staff():
    upload = request.files.get('file')
    if not upload:
        return error_response('No file uploaded', 400)

    try:
        existing = {s.email: s for s in Staff.query.all()}
        course_ids_by_code = {c.code: c.id for c in Course.query.all()}
        created, updated, errors = 0, 0, []
        row_number = 2

        for chunk_idx, chunk in enumerate(process_upload_stream(upload)):
            if chunk_idx == 0 and chunk:
                missing = get_missing_columns(set(chunk[0].keys()), STAFF_COLUMNS)
                if missing:
                    return error_response(f'Missing columns: {", ".join(sorted(missing))}', 400)

            for offset, row in enumerate(chunk):
                payloads, row_errors = parse_rows([row], staff_payload_from_row, row_number + offset)
                if row_errors:
                    errors.extend(row_errors)
                    continue
                payload = payloads[0]

                # Course codes column is optional; leave existing assignments alone when blank
                codes = normalize_comma_list(row.get('courses'))
                unknown = [code for code in codes if code not in course_ids_by_code]
                if unknown:
                    errors.append(f"Row {row_number + offset}: unknown course codes {', '.join(unknown)}")
                    continue
                if codes:
                    payload['courses'] = [course_ids_by_code[code] for code in dict.fromkeys(codes)]
                else:
                    payload.pop('courses', None)

                member = existing.get(payload['email'])
                if member:
                    member.update(**payload)
                    updated += 1
                else:
                    member = Staff(**payload)
                    existing[payload['email']] = member
                    created += 1
                db.session.add(member)

            row_number += len(chunk)
            db.session.commit()
    except ValueError as exc:
        return error_response(str(exc), 400)
    except Exception as exc:
        db.session.rollback()
        logger.exception("Staff import failed")
        return error_response(f'Import failed: {exc}', 500)

    invalidate_cache('staff', 'timetables')
    return jsonify({'success': True, 'created': created, 'updated': updated, 'errors': errors})


# Timetable Management
@app.route('/api/timetables')
@cache_response('timetables')
def list_timetables():
    courses, staff = load_directory()
    timetables = Timetable.query.order_by('-updated_at').all()
    return jsonify([populate_timetable(t, courses, staff) for t in timetables])


@app.route('/api/timetables/<int:timetable_id>')
@cache_response('timetables')
def get_timetable(timetable_id):
    timetable = Timetable.query.get_or_404(timetable_id)
    courses, staff = load_directory()
    return jsonify(populate_timetable(timetable, courses, staff))


@app.route('/api/timetables', methods=['POST'])
def create_timetable():
    data = validate_timetable_payload(request.get_json(silent=True))
    timetable = Timetable(**data).reset_schedule()
    timetable.save()
    invalidate_cache('timetables')
    return jsonify(timetable.to_json()), 201


@app.route('/api/timetables/<int:timetable_id>', methods=['PUT'])
def update_timetable(timetable_id):
    timetable = Timetable.query.get_or_404(timetable_id)
    data = validate_timetable_payload(request.get_json(silent=True), partial=True)
    reshaped = any(k in data and data[k] != getattr(timetable, k) for k in ('working_days', 'hours_per_day'))
    timetable.update(**data)
    if reshaped:
        # The old grid no longer fits the new days/hours
        timetable.reset_schedule()
    timetable.save()
    invalidate_cache('timetables')
    return jsonify(timetable.to_json())


@app.route('/api/timetables/<int:timetable_id>', methods=['DELETE'])
def delete_timetable(timetable_id):
    timetable = Timetable.query.get_or_404(timetable_id)
    timetable.delete()
    invalidate_cache('timetables')
    return jsonify({'success': True, 'message': 'Timetable deleted successfully'})


@app.route('/api/timetables/<int:timetable_id>/generate', methods=['POST'])
def generate_timetable(timetable_id):
    timetable = Timetable.query.get_or_404(timetable_id)
    courses, staff = load_directory()
    generator = TimetableGenerator(generator_config_from_app(app.config))

    result = generate_schedule(timetable, courses, staff, generator)
    invalidate_cache('timetables')

    summary = result.to_dict()
    return jsonify({
        'success': True,
        'timetable': populate_timetable(timetable, courses, staff),
        'diagnostics': summary['diagnostics'],
        'warnings': summary['warnings'],
        'course_hours': summary['course_hours'],
        'staff_hours': summary['staff_hours'],
        'staff_schedules': summary['staff_schedules'],
    })


@app.route('/api/timetables/<int:timetable_id>/slot/<int:day_index>/<int:slot_index>', methods=['PUT'])
def update_slot(timetable_id, day_index, slot_index):
    timetable = Timetable.query.get_or_404(timetable_id)
    payload = request.get_json(silent=True) or {}
    course_id = parse_id(payload['course_id'], 'course_id') if payload.get('course_id') else None
    staff_id = parse_id(payload['staff_id'], 'staff_id') if payload.get('staff_id') else None

    warnings = []
    if course_id is not None:
        Course.query.get_or_404(course_id)
    if staff_id is not None:
        member = Staff.query.get_or_404(staff_id)
        if course_id is not None and course_id not in member.courses:
            warnings.append(f'{member.name} is not assigned to teach course {course_id}')

    try:
        timetable.set_slot(day_index, slot_index, course_id, staff_id)
    except ValueError as exc:
        return error_response(str(exc), 400)

    invalidate_cache('timetables')
    courses, staff = load_directory()
    result = populate_timetable(timetable, courses, staff)
    if warnings:
        result['warnings'] = warnings
    return jsonify(result)


# Export
@app.route('/api/timetables/<int:timetable_id>/export')
def export_timetable(timetable_id):
    timetable = Timetable.query.get_or_404(timetable_id)
    courses, staff = load_directory()
    content = export_schedule_csv(timetable, courses, staff)
    return send_file(
        io.BytesIO(content.encode('utf-8')),
        mimetype='text/csv',
        as_attachment=True,
        download_name=f'timetable_{timetable.id}_{datetime.now().strftime("%Y%m%d")}.csv'
    )


if __name__ == '__main__':
    app.run(debug=env_flag('FLASK_DEBUG', False), port=int(os.getenv('PORT', 5000)), threaded=True)
