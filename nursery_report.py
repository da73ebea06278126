"""
Nursery Report - school administration and report cards.

A Flask web application for small nursery schools: student and class rosters,
staff accounts, term marks, printable report cards and the school
registration/approval workflow. School data lives in a key-value record store
(see record_store.py), one tenant per registered school.

Version: 1.0.0
"""

from flask import Flask, render_template, request, redirect, url_for, session, flash, jsonify, Response
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError
from wtforms import StringField, PasswordField, SelectField, validators
import base64
import os
from collections import deque
from datetime import datetime
from werkzeug.security import generate_password_hash, check_password_hash

import logging
from dotenv import load_dotenv

import record_store
from record_store import PLATFORM_TENANT, PostgresRecordStore, memory_store_for
from school_records import (
    ACADEMIC_YEARS, PROMOTION_DECISIONS, ROLE_ADMIN, ROLE_SUPER_ADMIN, ROLE_TEACHER,
    SUBJECTS, TERMS, MarkEntry, RecordNotFound,
    assign_teacher, create_classes, create_student, create_user, delete_class, delete_student,
    delete_user, ensure_seeded, export_database, get_classes, get_headmaster_name, get_marks,
    get_school_config, get_school_logo, get_student, get_students_by_class, get_teacher_classes,
    get_users, import_database, parse_score_change, authenticate, rename_class,
    resolve_class_teacher, save_marks_batch, save_school_config, set_promotion_decision,
    update_student, update_user, get_all_students,
)
from report_card import PROMOTION_AUTOMATIC, PROMOTION_MODES, build_report, grade_for_score, ordinal
from registration import (
    DEFAULT_POLL_SECONDS, STATUS_APPROVED, STATUS_PENDING, STATUS_REJECTED, PLAN_PRICES, RegistrationEvents,
    get_registration, registration_feed, submit_registration, update_registration_status,
)
from summary_service import generate_student_summary

load_dotenv()

app = Flask(__name__, template_folder='templates')
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None
app.config['MAX_CONTENT_LENGTH'] = 8 * 1024 * 1024

# Initialize CSRF Protection
csrf = CSRFProtect(app)

STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND', 'postgres').strip().lower()
if STORAGE_BACKEND not in ('postgres', 'memory'):
    raise RuntimeError("STORAGE_BACKEND must be 'postgres' or 'memory'.")
if STORAGE_BACKEND == 'postgres':
    DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
    if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
        raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")

SUPER_ADMIN_USERNAME = os.environ.get('SUPER_ADMIN_USERNAME', 'superadmin').strip()
SUPER_ADMIN_PASSWORD = os.environ.get('SUPER_ADMIN_PASSWORD', '').strip()
if not SUPER_ADMIN_PASSWORD:
    raise RuntimeError("SUPER_ADMIN_PASSWORD is required. Set it in environment variables.")
if len(SUPER_ADMIN_PASSWORD) < 12:
    raise RuntimeError("SUPER_ADMIN_PASSWORD is too short. Use at least 12 characters.")
SUPER_ADMIN_PASSWORD_HASH = generate_password_hash(SUPER_ADMIN_PASSWORD)

DEFAULT_SCHOOL_ID = os.environ.get('DEFAULT_SCHOOL_ID', 'default').strip() or 'default'
PROMOTION_MODE = os.environ.get('PROMOTION_MODE', PROMOTION_AUTOMATIC).strip().lower()
if PROMOTION_MODE not in PROMOTION_MODES:
    raise RuntimeError(f"PROMOTION_MODE must be one of: {', '.join(PROMOTION_MODES)}.")
try:
    REGISTRATION_POLL_SECONDS = int(os.environ.get('REGISTRATION_POLL_SECONDS', DEFAULT_POLL_SECONDS))
except ValueError:
    REGISTRATION_POLL_SECONDS = DEFAULT_POLL_SECONDS

# Set up logging
logging.basicConfig(filename='app.log', level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")


def store_for(tenant_id):
    """Record store for one school tenant."""
    if STORAGE_BACKEND == 'memory':
        return memory_store_for(tenant_id)
    return PostgresRecordStore(tenant_id)


def platform_store():
    return store_for(PLATFORM_TENANT)


def current_store():
    return store_for(session.get('school_id') or DEFAULT_SCHOOL_ID)


# Initialize database (can be disabled when schema is managed by migrations).
RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '1').strip().lower() in ('1', 'true', 'yes')
if STORAGE_BACKEND == 'postgres':
    if RUN_STARTUP_DDL:
        record_store.init_db()
    else:
        logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")

RUN_STARTUP_BOOTSTRAP = os.environ.get('RUN_STARTUP_BOOTSTRAP', '1').strip().lower() in ('1', 'true', 'yes')
SEED_DEMO_DATA = os.environ.get('SEED_DEMO_DATA', '').strip().lower() in ('1', 'true', 'yes')
if SEED_DEMO_DATA and not ALLOW_INSECURE_DEFAULTS:
    raise RuntimeError("SEED_DEMO_DATA is only allowed when ALLOW_INSECURE_DEFAULTS is enabled.")
if RUN_STARTUP_BOOTSTRAP:
    ensure_seeded(store_for(DEFAULT_SCHOOL_ID), demo=SEED_DEMO_DATA)

app.jinja_env.filters['ordinal'] = ordinal

# Registration activity seen by this process, newest first, for the super admin dashboard.
registration_events = RegistrationEvents()
RECENT_REGISTRATION_EVENTS = deque(maxlen=20)


def record_registration_event(event_name, reg):
    RECENT_REGISTRATION_EVENTS.appendleft({
        'event': event_name,
        'id': reg.get('id'),
        'schoolName': reg.get('schoolName'),
        'at': datetime.now().isoformat(timespec='seconds'),
    })
    logging.info("Registration event %s: %s (%s)", event_name, reg.get('schoolName'), reg.get('id'))


registration_events.subscribe(record_registration_event)


# ==================== FORMS ====================

class LoginForm(FlaskForm):
    school_id = StringField('School ID', [validators.Optional(), validators.Length(max=64)])
    username = StringField('Username/Email', [validators.DataRequired(), validators.Length(max=120)])
    password = PasswordField('Password', [validators.DataRequired()])


class StaffForm(FlaskForm):
    username = StringField('Username', [validators.DataRequired(), validators.Length(max=120)])
    name = StringField('Full name', [validators.Optional(), validators.Length(max=120)])
    password = PasswordField('Password', [validators.DataRequired(), validators.Length(min=4)])
    role = SelectField('Role', choices=[(ROLE_TEACHER, 'Teacher'), (ROLE_ADMIN, 'Admin')], default=ROLE_TEACHER)


class RegistrationForm(FlaskForm):
    school_name = StringField('School name', [validators.DataRequired(), validators.Length(max=160)])
    district = StringField('District', [validators.DataRequired()])
    sector = StringField('Sector', [validators.DataRequired()])
    phone = StringField('Phone', [validators.DataRequired(), validators.Length(max=32)])
    address = StringField('Address', [validators.DataRequired()])
    admin_name = StringField('Headmaster / admin name', [validators.DataRequired()])
    admin_email = StringField('Admin email', [validators.DataRequired(), validators.Length(max=120)])
    admin_password = PasswordField('Admin password', [validators.DataRequired(), validators.Length(min=6)])
    plan = SelectField('Plan', choices=[(p, p.title()) for p in PLAN_PRICES], default='term')


def first_form_error(form):
    for field_name, errors in form.errors.items():
        if errors:
            label = getattr(form, field_name).label.text if hasattr(form, field_name) else field_name
            return f'{label}: {errors[0]}'
    return 'Invalid form submission.'


def uploaded_file_as_data_uri(file_storage):
    """Read an uploaded image into a data URI, or '' when nothing was sent."""
    if not file_storage or not file_storage.filename:
        return ''
    content = file_storage.read()
    if not content:
        return ''
    mimetype = file_storage.mimetype or 'application/octet-stream'
    return f"data:{mimetype};base64,{base64.b64encode(content).decode('ascii')}"


def selected_period(source):
    """Academic year and term from query/form values, defaulting to the first of each."""
    year = (source.get('year') or ACADEMIC_YEARS[0]).strip()
    term = (source.get('term') or TERMS[0]).strip()
    if term not in TERMS:
        raise ValueError(f'Unknown term "{term}".')
    return year, term


def wants_json():
    return request.args.get('format') == 'json'


# ==================== ROUTES ====================

@app.route('/')
def home():
    role = session.get('role')
    if role == ROLE_SUPER_ADMIN:
        return redirect(url_for('super_admin_dashboard'))
    if role == ROLE_ADMIN:
        return redirect(url_for('admin_dashboard'))
    if role == ROLE_TEACHER:
        return redirect(url_for('teacher_dashboard'))
    return redirect(url_for('login'))


@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    if 'user_id' in session:
        flash('Form token expired/invalid. Please retry your last action.', 'error')
        return redirect(request.referrer or url_for('home'))
    flash('Your session has expired. Please login again.', 'error')
    return redirect(url_for('login'))


@app.route('/login', methods=['GET', 'POST'])
def login():
    """Single login for all users; school staff log in against their school tenant."""
    form = LoginForm()
    if request.method == 'POST':
        if not form.validate_on_submit():
            flash('Please enter username and password.', 'error')
            return render_template('shared/login.html', form=form)

        username = form.username.data.strip()
        password = form.password.data
        school_id = (form.school_id.data or '').strip() or DEFAULT_SCHOOL_ID

        if username.lower() == SUPER_ADMIN_USERNAME.lower() and check_password_hash(SUPER_ADMIN_PASSWORD_HASH, password):
            session.clear()
            session['user_id'] = SUPER_ADMIN_USERNAME
            session['role'] = ROLE_SUPER_ADMIN
            return redirect(url_for('super_admin_dashboard'))

        store = store_for(school_id)
        reg = get_registration(store)
        if reg and reg.get('status') != STATUS_APPROVED:
            if reg.get('status') == STATUS_REJECTED:
                flash(f'Your registration for "{reg.get("schoolName")}" was not approved. Please contact support.', 'error')
            else:
                flash(f'We are verifying your payment for "{reg.get("schoolName")}". You will be able to login once approved.', 'error')
            return render_template('shared/login.html', form=form)

        user = authenticate(store, username, password)
        if not user:
            logging.info("Failed login for %s on school %s", username, school_id)
            flash('Invalid Credentials', 'error')
            return render_template('shared/login.html', form=form)

        session.clear()
        session['user_id'] = user['username']
        session['role'] = user['role']
        session['school_id'] = school_id
        return redirect(url_for('home'))

    return render_template('shared/login.html', form=form)


@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('login'))


@app.route('/register', methods=['GET', 'POST'])
def register():
    """Public school registration; the school stays pending until a super admin reviews it."""
    form = RegistrationForm()
    if request.method == 'POST':
        if not form.validate_on_submit():
            flash(first_form_error(form), 'error')
            return render_template('shared/register.html', form=form)
        data = {
            'schoolName': form.school_name.data,
            'district': form.district.data,
            'sector': form.sector.data,
            'phone': form.phone.data,
            'address': form.address.data,
            'adminName': form.admin_name.data,
            'adminEmail': form.admin_email.data,
            'adminPassword': form.admin_password.data,
            'plan': form.plan.data,
            'paymentScreenshot': uploaded_file_as_data_uri(request.files.get('payment_screenshot')),
        }
        try:
            reg = submit_registration(platform_store(), store_for, data, event_bus=registration_events)
        except ValueError as e:
            flash(str(e), 'error')
            return render_template('shared/register.html', form=form)
        session['registration_id'] = reg['id']
        flash(f'Registration received. Your School ID is {reg["id"]}.', 'success')
        return redirect(url_for('registration_status'))
    return render_template('shared/register.html', form=form)


@app.route('/register/status')
def registration_status():
    """Pending page for this browser's registration; it re-reads ?format=json every pollSeconds."""
    reg_id = (request.args.get('id') or session.get('registration_id') or '').strip()
    reg = get_registration(store_for(reg_id)) if reg_id else None
    if not reg:
        if wants_json():
            return jsonify({'error': 'Registration not found.'}), 404
        flash('No registration in progress.', 'error')
        return redirect(url_for('register'))
    status = {
        'id': reg['id'],
        'schoolName': reg.get('schoolName'),
        'status': reg.get('status'),
        'pollSeconds': REGISTRATION_POLL_SECONDS,
    }
    if wants_json():
        return jsonify(status)
    return render_template('shared/registration_status.html', status=status)


# ==================== SUPER ADMIN ROUTES ====================

@app.route('/super-admin')
def super_admin_dashboard():
    if session.get('role') != ROLE_SUPER_ADMIN:
        return redirect(url_for('login'))
    feed = registration_feed(platform_store(), poll_seconds=REGISTRATION_POLL_SECONDS)
    feed['recentEvents'] = list(RECENT_REGISTRATION_EVENTS)
    if wants_json():
        return jsonify(feed)
    return render_template('super/super_admin_dashboard.html', feed=feed, plan_prices=PLAN_PRICES)


@app.route('/super-admin/registrations')
def super_admin_registrations():
    """Poll feed for the dashboard, optionally filtered by ?status=pending|approved|rejected."""
    if session.get('role') != ROLE_SUPER_ADMIN:
        return redirect(url_for('login'))
    feed = registration_feed(platform_store(), poll_seconds=REGISTRATION_POLL_SECONDS)
    feed['recentEvents'] = list(RECENT_REGISTRATION_EVENTS)
    status = (request.args.get('status') or '').strip().lower()
    if status in (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED):
        feed['registrations'] = [r for r in feed['registrations'] if r.get('status') == status]
    return jsonify(feed)


def _review_registration(reg_id, status):
    try:
        reg, admin_created = update_registration_status(
            platform_store(), store_for, reg_id, status, event_bus=registration_events
        )
    except (RecordNotFound, ValueError) as e:
        flash(str(e), 'error')
    else:
        if status == STATUS_APPROVED:
            message = f'Activation Successful! {reg.get("schoolName")} is now live.'
            if not admin_created:
                message += ' Existing admin account kept.'
            flash(message, 'success')
        else:
            flash(f'{reg.get("schoolName")} registration rejected.', 'success')
    return redirect(url_for('super_admin_dashboard'))


@app.route('/super-admin/registrations/<reg_id>/approve', methods=['POST'])
def super_admin_approve_registration(reg_id):
    if session.get('role') != ROLE_SUPER_ADMIN:
        return redirect(url_for('login'))
    return _review_registration(reg_id, STATUS_APPROVED)


@app.route('/super-admin/registrations/<reg_id>/reject', methods=['POST'])
def super_admin_reject_registration(reg_id):
    if session.get('role') != ROLE_SUPER_ADMIN:
        return redirect(url_for('login'))
    return _review_registration(reg_id, STATUS_REJECTED)


# ==================== SCHOOL ADMIN ROUTES ====================

@app.route('/admin')
def admin_dashboard():
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    store = current_store()
    filter_class = (request.args.get('class') or '').strip()
    class_list = get_classes(store)
    student_list = get_students_by_class(store, filter_class) if filter_class else get_all_students(store)
    dashboard = {
        'schoolId': session.get('school_id'),
        'filterClass': filter_class,
        'classes': [
            dict(c, teacher=resolve_class_teacher(store, c), studentCount=len(get_students_by_class(store, c['name'])))
            for c in class_list
        ],
        'students': sorted(student_list, key=lambda s: (s.get('name') or '').lower()),
        'users': get_users(store),
        'config': get_school_config(store),
        'years': ACADEMIC_YEARS,
        'terms': TERMS,
        'promotionMode': PROMOTION_MODE,
    }
    if wants_json():
        return jsonify(dashboard)
    return render_template(
        'school/admin_dashboard.html',
        dashboard=dashboard,
        staff_form=StaffForm(),
        logo_url=get_school_logo(store),
        decisions=PROMOTION_DECISIONS,
    )


@app.route('/admin/students', methods=['POST'])
def admin_create_student():
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    try:
        student = create_student(
            current_store(),
            request.form.get('name', ''),
            request.form.get('class_id', '').strip(),
            photo_url=uploaded_file_as_data_uri(request.files.get('photo')) or None,
        )
        flash(f'Student {student["name"]} added to {student["className"]}.', 'success')
    except (RecordNotFound, ValueError) as e:
        flash(str(e), 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/students/<student_id>/update', methods=['POST'])
def admin_update_student(student_id):
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    try:
        update_student(
            current_store(),
            student_id,
            name=request.form.get('name'),
            class_id=request.form.get('class_id', '').strip() or None,
            photo_url=uploaded_file_as_data_uri(request.files.get('photo')) or None,
        )
        flash('Student updated.', 'success')
    except (RecordNotFound, ValueError) as e:
        flash(str(e), 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/students/<student_id>/delete', methods=['POST'])
def admin_delete_student(student_id):
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    try:
        removed = delete_student(current_store(), student_id)
        flash(f'Student deleted with {removed} mark(s).', 'success')
    except RecordNotFound as e:
        flash(str(e), 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/classes', methods=['POST'])
def admin_create_classes():
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    try:
        created = create_classes(
            current_store(),
            request.form.get('name', ''),
            streams=request.form.get('streams', ''),
            teacher_username=request.form.get('teacher_username', '').strip() or None,
        )
    except ValueError as e:
        flash(str(e), 'error')
        return redirect(url_for('admin_dashboard'))
    if created:
        flash(f'Created: {", ".join(c["name"] for c in created)}.', 'success')
    else:
        flash('No classes created; the names already exist.', 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/classes/<class_id>/rename', methods=['POST'])
def admin_rename_class(class_id):
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    try:
        moved = rename_class(current_store(), class_id, request.form.get('name', ''))
        flash(f'Class renamed; {moved} student(s) updated.', 'success')
    except (RecordNotFound, ValueError) as e:
        flash(str(e), 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/classes/<class_id>/assign-teacher', methods=['POST'])
def admin_assign_teacher(class_id):
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    try:
        cls = assign_teacher(current_store(), class_id, request.form.get('teacher_username', ''))
        flash(f'{cls["name"]} teacher updated.', 'success')
    except (RecordNotFound, ValueError) as e:
        flash(str(e), 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/classes/<class_id>/delete', methods=['POST'])
def admin_delete_class(class_id):
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    try:
        dangling = delete_class(current_store(), class_id)
    except RecordNotFound as e:
        flash(str(e), 'error')
        return redirect(url_for('admin_dashboard'))
    if dangling:
        flash(f'Class deleted. Warning: {dangling} student(s) still reference it; move them to another class.', 'warning')
    else:
        flash('Class deleted.', 'success')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/users', methods=['POST'])
def admin_create_user():
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    form = StaffForm()
    if not form.validate_on_submit():
        flash(first_form_error(form), 'error')
        return redirect(url_for('admin_dashboard'))
    try:
        user = create_user(
            current_store(),
            form.username.data,
            form.name.data,
            form.password.data,
            role=form.role.data,
            school_id=session.get('school_id'),
        )
        flash(f'Staff account {user["username"]} created.', 'success')
    except ValueError as e:
        flash(str(e), 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/users/<username>/delete', methods=['POST'])
def admin_delete_user(username):
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    if username == session.get('user_id'):
        flash('You cannot delete your own account.', 'error')
    elif delete_user(current_store(), username):
        flash(f'User {username} deleted.', 'success')
    else:
        flash('User not found', 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/config', methods=['POST'])
def admin_update_config():
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    fields = {}
    for form_key, config_key in (
        ('headmaster_name', 'headmasterName'), ('district', 'district'), ('sector', 'sector'),
        ('cell', 'cell'), ('phone', 'phone'), ('motto', 'motto'),
    ):
        if form_key in request.form:
            fields[config_key] = request.form.get(form_key, '').strip()
    logo = uploaded_file_as_data_uri(request.files.get('logo'))
    if logo:
        fields['logoUrl'] = logo
    save_school_config(current_store(), **fields)
    flash('School settings saved.', 'success')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/backup')
def admin_backup():
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    filename = f"nursery_backup_{datetime.now().strftime('%Y-%m-%d')}.json"
    return Response(
        export_database(current_store()),
        mimetype='application/json',
        headers={'Content-Disposition': f'attachment; filename={filename}'}
    )


@app.route('/admin/restore', methods=['POST'])
def admin_restore():
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    upload = request.files.get('backup_file')
    if not upload or not upload.filename:
        flash('Choose a backup file to restore.', 'error')
        return redirect(url_for('admin_dashboard'))
    try:
        content = upload.read().decode('utf-8')
    except UnicodeDecodeError:
        content = ''
    if import_database(current_store(), content):
        flash('Database restored!', 'success')
    else:
        flash('Invalid database file. Nothing was restored.', 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/decisions', methods=['POST'])
def admin_set_decision():
    """Record the jury verdict for a student when promotion is decided manually."""
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('login'))
    try:
        set_promotion_decision(
            current_store(),
            request.form.get('student_id', '').strip(),
            request.form.get('year', '').strip() or ACADEMIC_YEARS[0],
            request.form.get('decision', ''),
        )
        flash('Promotion decision saved.', 'success')
    except (RecordNotFound, ValueError) as e:
        flash(str(e), 'error')
    return redirect(url_for('admin_dashboard'))


# ==================== REPORT ROUTES ====================

def can_view_student(store, student):
    role = session.get('role')
    if role == ROLE_ADMIN:
        return True
    if role == ROLE_TEACHER:
        class_names = {c.get('name') for c in get_teacher_classes(store, session.get('user_id'))}
        return student.get('className') in class_names
    return False


@app.route('/reports/<student_id>')
def view_report(student_id):
    if session.get('role') not in (ROLE_ADMIN, ROLE_TEACHER):
        return redirect(url_for('login'))
    store = current_store()
    student = get_student(store, student_id)
    if not student or not can_view_student(store, student):
        if request.args.get('format') == 'json':
            return jsonify({'error': 'Student not found.'}), 404
        flash('Student not found.', 'error')
        return redirect(url_for('home'))
    try:
        year, term = selected_period(request.args)
    except ValueError as e:
        if request.args.get('format') == 'json':
            return jsonify({'error': str(e)}), 400
        flash(str(e), 'error')
        return redirect(url_for('home'))

    summarizer = generate_student_summary if request.args.get('summary') == '1' else None
    report = build_report(store, student_id, year, term, promotion_mode=PROMOTION_MODE, summarizer=summarizer)
    if request.args.get('format') == 'json':
        return jsonify(report.to_dict())
    return render_template(
        'school/report_card.html',
        report=report,
        config=get_school_config(store),
        logo_url=get_school_logo(store),
        headmaster_name=get_headmaster_name(store),
        grade_for_score=grade_for_score,
        terms=TERMS,
        decisions=PROMOTION_DECISIONS,
    )


@app.route('/reports/<student_id>/summary', methods=['POST'])
def report_summary(student_id):
    if session.get('role') not in (ROLE_ADMIN, ROLE_TEACHER):
        return jsonify({'error': 'Login required.'}), 401
    store = current_store()
    student = get_student(store, student_id)
    if not student or not can_view_student(store, student):
        return jsonify({'error': 'Student not found.'}), 404
    try:
        year, term = selected_period(request.form)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    report = build_report(store, student_id, year, term, promotion_mode=PROMOTION_MODE,
                          summarizer=generate_student_summary)
    return jsonify({'summary': report.summary})


# ==================== TEACHER ROUTES ====================

@app.route('/teacher')
def teacher_dashboard():
    if session.get('role') != ROLE_TEACHER:
        return redirect(url_for('login'))
    store = current_store()
    my_classes = get_teacher_classes(store, session.get('user_id'))
    selected_class = (request.args.get('class') or (my_classes[0]['name'] if my_classes else '')).strip()
    if selected_class and selected_class not in {c['name'] for c in my_classes}:
        flash('You are not assigned to this class.', 'error')
        selected_class = my_classes[0]['name'] if my_classes else ''
    subject_id = (request.args.get('subject') or SUBJECTS[0]['id']).strip()
    try:
        year, term = selected_period(request.args)
    except ValueError:
        year, term = ACADEMIC_YEARS[0], TERMS[0]

    class_students = sorted(get_students_by_class(store, selected_class), key=lambda s: (s.get('name') or '').lower())
    student_ids = {s['id'] for s in class_students}
    scores = {
        m['studentId']: m['score'] for m in get_marks(store)
        if m.get('studentId') in student_ids and m.get('subjectId') == subject_id
        and m.get('year') == year and m.get('term') == term
    }
    sheet = {
        'classes': my_classes,
        'selectedClass': selected_class,
        'subject': subject_id,
        'subjects': SUBJECTS,
        'year': year,
        'term': term,
        'students': [
            dict(s, score=scores.get(s['id']),
                 grade=grade_for_score(scores[s['id']]) if s['id'] in scores else None)
            for s in class_students
        ],
    }
    if wants_json():
        return jsonify(sheet)
    return render_template('teacher/teacher_dashboard.html', sheet=sheet, years=ACADEMIC_YEARS, terms=TERMS)


@app.route('/teacher/marks', methods=['POST'])
def teacher_save_marks():
    """Save one subject's marks for a whole class; blank inputs clear existing marks."""
    if session.get('role') != ROLE_TEACHER:
        return redirect(url_for('login'))
    store = current_store()
    class_name = request.form.get('class_name', '').strip()
    subject_id = request.form.get('subject_id', '').strip()
    back = url_for('teacher_dashboard', **{'class': class_name, 'subject': subject_id,
                                           'year': request.form.get('year', ''), 'term': request.form.get('term', '')})
    if class_name not in {c['name'] for c in get_teacher_classes(store, session.get('user_id'))}:
        flash('You are not assigned to this class.', 'error')
        return redirect(url_for('teacher_dashboard'))
    if subject_id not in {s['id'] for s in SUBJECTS}:
        flash('Unknown subject.', 'error')
        return redirect(back)
    try:
        year, term = selected_period(request.form)
    except ValueError as e:
        flash(str(e), 'error')
        return redirect(back)

    entries = []
    for student in get_students_by_class(store, class_name):
        field_name = f"score_{student['id']}"
        if field_name not in request.form:
            continue
        try:
            change = parse_score_change(request.form.get(field_name))
        except ValueError as e:
            flash(f'{student["name"]}: {e}', 'error')
            return redirect(back)
        entries.append(MarkEntry(student['id'], subject_id, year, term, change))

    if not entries:
        flash('No changes to save.', 'error')
        return redirect(back)
    save_marks_batch(store, entries)
    logging.info("%s saved %s mark(s) for %s / %s / %s %s",
                 session.get('user_id'), len(entries), class_name, subject_id, year, term)
    flash('All marks saved!', 'success')
    return redirect(back)


# ==================== PROFILE ====================

@app.route('/profile', methods=['POST'])
def update_profile():
    """Change own name, username or password."""
    if session.get('role') not in (ROLE_ADMIN, ROLE_TEACHER):
        return redirect(url_for('login'))
    password = request.form.get('password', '')
    if password and password != request.form.get('confirm_password', ''):
        flash('Passwords do not match.', 'error')
        return redirect(url_for('home'))
    try:
        user = update_user(
            current_store(),
            session.get('user_id'),
            name=request.form.get('name'),
            username=request.form.get('username'),
            password=password or None,
        )
    except (RecordNotFound, ValueError) as e:
        flash(str(e), 'error')
        return redirect(url_for('home'))
    session['user_id'] = user['username']
    flash('Profile updated.', 'success')
    return redirect(url_for('home'))


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
