"""
School records: repositories, queries, cascades and backup for one tenant.

All relationships are weak string references (Student.className points at a
ClassRoom name, ClassRoom.teacherUsername at a User username). They are
resolved by scanning the owning collection at read time, and every cascade
that keeps them consistent lives in this module.
"""

import json
import logging
import math
import re
import secrets
from dataclasses import dataclass
from datetime import datetime

from werkzeug.security import generate_password_hash, check_password_hash

from record_store import (
    USERS_KEY, CLASSES_KEY, STUDENTS_KEY, MARKS_KEY, CONFIG_KEY, DECISIONS_KEY,
)

ROLE_TEACHER = 'TEACHER'
ROLE_ADMIN = 'ADMIN'
ROLE_SUPER_ADMIN = 'SUPER_ADMIN'
ROLES = (ROLE_TEACHER, ROLE_ADMIN, ROLE_SUPER_ADMIN)

ACADEMIC_YEARS = ['2023-2024', '2024-2025', '2025-2026']
TERMS = ['Term 1', 'Term 2', 'Term 3']
FINAL_TERM = TERMS[-1]

INITIAL_CLASSES = ['Nursery 1 A', 'Nursery 1 B', 'Nursery 2', 'Nursery 3']

CONDUCT_SUBJECT_ID = 'conduct'
SUBJECTS = [
    {'id': 'numeracy', 'name': 'NUMERACY'},
    {'id': 'literacy', 'name': 'LITERACY'},
    {'id': 'discovery_world', 'name': 'DISCOVERY OF THE WORLD'},
    {'id': 'creative_arts', 'name': 'CREATIVE ARTS AND CRAFT'},
    {'id': 'health_pe', 'name': 'HEALTH AND PHYSICAL EDUCATION'},
    {'id': 'oral', 'name': 'ORAL'},
    {'id': 'social_emotional', 'name': 'SOCIAL AND EMOTIONALLY DEVELOPMENT'},
    {'id': CONDUCT_SUBJECT_ID, 'name': 'CONDUCT'},
]
UNKNOWN_SUBJECT_LABEL = 'UNKNOWN SUBJECT'

DEMO_STUDENTS = [
    {'id': 's1', 'name': 'Aline Keza', 'className': 'Nursery 1 A'},
    {'id': 's2', 'name': 'David Murenzi', 'className': 'Nursery 1 A'},
    {'id': 's3', 'name': 'Sarah Uwase', 'className': 'Nursery 1 B'},
    {'id': 's4', 'name': 'Kevin Mugisha', 'className': 'Nursery 2'},
    {'id': 's5', 'name': 'Divine Teta', 'className': 'Nursery 2'},
    {'id': 's6', 'name': 'Eric Ntwari', 'className': 'Nursery 3'},
]

CONFIG_FIELDS = ('logoUrl', 'headmasterName', 'district', 'sector', 'cell', 'phone', 'motto')
CONFIG_DEFAULTS = {
    'headmasterName': '',
    'district': '',
    'sector': '',
    'cell': '',
    'phone': '',
    'motto': '',
}
DEFAULT_SCHOOL_LOGO = (
    "data:image/svg+xml;charset=utf-8,%3Csvg xmlns='http://www.w3.org/2000/svg' "
    "viewBox='0 0 300 200'%3E%3Ccircle cx='150' cy='70' r='45' fill='%23009E49' /%3E"
    "%3Cpath d='M50,120 L144,120 L144,165 L50,160 Z' fill='%230055A4' /%3E"
    "%3Cpath d='M156,120 L250,120 L250,160 L156,165 Z' fill='white' stroke='%230055A4' stroke-width='2' /%3E"
    "%3Ctext x='150' y='190' font-family='sans-serif' font-weight='bold' font-size='18' "
    "text-anchor='middle' fill='%230055A4'%3ENURSERY SCHOOL%3C/text%3E%3C/svg%3E"
)

PROMOTION_DECISIONS = ('Promoted', 'Advised to repeat', 'Promoted elsewhere')

BACKUP_VERSION = '1.0'


class RecordNotFound(LookupError):
    """A referenced user, class or student does not exist."""


# ==================== REPOSITORIES ====================

class Collection:
    """list/get/put/delete over one JSON array blob, keyed by record fields."""

    def __init__(self, store, key, key_fields):
        self.store = store
        self.key = key
        self.key_fields = tuple(key_fields)

    def _normalize(self, key):
        return key if isinstance(key, tuple) else (key,)

    def key_of(self, record):
        return tuple(record.get(f) for f in self.key_fields)

    def list(self):
        return self.store.get_list(self.key)

    def replace_all(self, records):
        self.store.set(self.key, list(records))

    def get(self, key):
        wanted = self._normalize(key)
        for record in self.list():
            if self.key_of(record) == wanted:
                return record
        return None

    def put(self, record):
        """Replace the record with the same key in place, or append it."""
        records = self.list()
        wanted = self.key_of(record)
        for idx, existing in enumerate(records):
            if self.key_of(existing) == wanted:
                records[idx] = record
                break
        else:
            records.append(record)
        self.replace_all(records)
        return record

    def delete(self, key):
        wanted = self._normalize(key)
        records = self.list()
        kept = [r for r in records if self.key_of(r) != wanted]
        if len(kept) == len(records):
            return False
        self.replace_all(kept)
        return True


def users(store):
    return Collection(store, USERS_KEY, ('username',))


def classes(store):
    return Collection(store, CLASSES_KEY, ('id',))


def students(store):
    return Collection(store, STUDENTS_KEY, ('id',))


def marks(store):
    return Collection(store, MARKS_KEY, ('studentId', 'subjectId', 'year', 'term'))


def promotion_decisions(store):
    return Collection(store, DECISIONS_KEY, ('studentId', 'year'))


# ==================== SEEDING ====================

def class_slug(name):
    """Derive a class id from its name (e.g. 'Nursery 1 A' -> 'nursery-1-a')."""
    return re.sub(r'[^a-z0-9]+', '-', (name or '').lower().strip()).strip('-')


def unique_class_id(name, taken_ids):
    """Slug of ``name``, suffixed -2, -3, ... while the id is already in use."""
    base = class_slug(name) or 'class'
    candidate = base
    n = 2
    while candidate in taken_ids:
        candidate = f'{base}-{n}'
        n += 1
    return candidate


def ensure_seeded(store, demo=False):
    """Create missing collections; demo mode adds sample staff and students."""
    if store.get(USERS_KEY) is None:
        seeded_users = []
        if demo:
            seeded_users = [
                {'username': 'UMWARI', 'name': 'Teacher Umwari', 'role': ROLE_TEACHER,
                 'password': generate_password_hash('password')},
                {'username': 'ADMIN', 'name': 'School Admin', 'role': ROLE_ADMIN,
                 'password': generate_password_hash('admin')},
            ]
        store.set(USERS_KEY, seeded_users)
    if store.get(CLASSES_KEY) is None:
        store.set(CLASSES_KEY, [
            {
                'id': class_slug(name),
                'name': name,
                'teacherUsername': 'UMWARI' if demo and 'Nursery 1' in name else None,
            }
            for name in INITIAL_CLASSES
        ])
    if store.get(STUDENTS_KEY) is None:
        store.set(STUDENTS_KEY, [dict(s) for s in DEMO_STUDENTS] if demo else [])
    if store.get(MARKS_KEY) is None:
        store.set(MARKS_KEY, [])


# ==================== USERS ====================

def public_user(user):
    """Copy of a user record without the password hash."""
    if not user:
        return None
    return {k: v for k, v in user.items() if k != 'password'}


def get_users(store):
    return [public_user(u) for u in users(store).list()]


def get_user(store, username):
    return public_user(users(store).get(username))


def create_user(store, username, name, password=None, role=ROLE_TEACHER, email=None, school_id=None,
                password_hash=None):
    """Create a staff account. Raises ValueError on invalid or duplicate input.

    ``password_hash`` lets callers that already hold a hashed password (school
    registration) create the account without re-hashing.
    """
    username = (username or '').strip()
    if not username or not (password or password_hash):
        raise ValueError('Username and password are required.')
    if role not in ROLES:
        raise ValueError(f'Unknown role "{role}".')
    repo = users(store)
    if repo.get(username):
        raise ValueError('Username already taken')
    user = {
        'username': username,
        'name': (name or '').strip() or username,
        'role': role,
        'password': password_hash or generate_password_hash(password),
    }
    if email:
        user['email'] = email.strip().lower()
    if school_id:
        user['schoolId'] = school_id
    repo.put(user)
    logging.info("User created: %s (%s)", username, role)
    return public_user(user)


def update_user(store, current_username, name=None, username=None, password=None):
    """Update profile fields; a teacher rename cascades to class assignments."""
    records = users(store).list()
    idx = next((i for i, u in enumerate(records) if u.get('username') == current_username), None)
    if idx is None:
        raise RecordNotFound('User not found')

    current = records[idx]
    new_username = (username or '').strip()
    if new_username and new_username != current_username:
        if any(u.get('username') == new_username for u in records):
            raise ValueError('Username already taken')

    updated = dict(current)
    updated['name'] = (name or '').strip() or current.get('name', '')
    updated['username'] = new_username or current_username
    if password:
        updated['password'] = generate_password_hash(password)
    records[idx] = updated
    users(store).replace_all(records)

    if new_username and new_username != current_username and current.get('role') == ROLE_TEACHER:
        class_list = classes(store).list()
        for cls in class_list:
            if cls.get('teacherUsername') == current_username:
                cls['teacherUsername'] = new_username
        classes(store).replace_all(class_list)
    return public_user(updated)


def delete_user(store, username):
    """Delete a user and unassign every class they taught. Returns False if absent."""
    if not users(store).delete(username):
        return False
    class_list = classes(store).list()
    changed = False
    for cls in class_list:
        if cls.get('teacherUsername') == username:
            cls['teacherUsername'] = None
            changed = True
    if changed:
        classes(store).replace_all(class_list)
    return True


def authenticate(store, username, password):
    """Return the matching user (without password) or None.

    Email usernames match case-insensitively; other usernames must match exactly.
    """
    wanted = (username or '').strip()
    repo = users(store)
    user = repo.get(wanted)
    if not user and '@' in wanted:
        user = next((u for u in repo.list() if (u.get('username') or '').lower() == wanted.lower()), None)
    if not user or not password:
        return None
    if not check_password_hash(user.get('password') or '', password):
        return None
    return public_user(user)


# ==================== CLASSES ====================

def get_classes(store):
    return sorted(classes(store).list(), key=lambda c: (c.get('name') or '').lower())


def get_teacher_classes(store, username):
    return [c for c in get_classes(store) if c.get('teacherUsername') == username]


def resolve_class_teacher(store, cls):
    """Resolve ClassRoom.teacherUsername to a user, or None when unassigned/dangling."""
    username = (cls or {}).get('teacherUsername')
    return get_user(store, username) if username else None


def resolve_class_for_student(store, student):
    """Resolve Student.className to its ClassRoom, or None when dangling."""
    class_name = (student or {}).get('className')
    return next((c for c in classes(store).list() if c.get('name') == class_name), None)


def create_classes(store, name, streams='', teacher_username=None):
    """Create one class, or one per comma-separated stream suffix. Returns created classes."""
    base = ' '.join((name or '').split())
    if not base:
        raise ValueError('Class name is required.')
    suffixes = [s.strip() for s in (streams or '').split(',') if s.strip()]
    names = [f'{base} {suffix}' for suffix in suffixes] if suffixes else [base]

    repo = classes(store)
    class_list = repo.list()
    existing = {(c.get('name') or '').lower() for c in class_list}
    taken_ids = {c.get('id') for c in class_list}
    created = []
    for full_name in names:
        if full_name.lower() in existing:
            logging.warning("Class %s already exists; skipped.", full_name)
            continue
        cls = {
            'id': unique_class_id(full_name, taken_ids),
            'name': full_name,
            'teacherUsername': teacher_username or None,
        }
        class_list.append(cls)
        existing.add(full_name.lower())
        taken_ids.add(cls['id'])
        created.append(cls)
    if created:
        repo.replace_all(class_list)
    return created


def assign_teacher(store, class_id, teacher_username):
    repo = classes(store)
    cls = repo.get(class_id)
    if not cls:
        raise RecordNotFound('Class not found')
    teacher_username = (teacher_username or '').strip() or None
    if teacher_username and not users(store).get(teacher_username):
        raise ValueError(f'No staff account named "{teacher_username}".')
    cls['teacherUsername'] = teacher_username
    repo.put(cls)
    return cls


def rename_class(store, class_id, new_name):
    """Rename a class and move its students along. Returns the number of students moved."""
    new_name = ' '.join((new_name or '').split())
    if not new_name:
        raise ValueError('Class name is required.')
    repo = classes(store)
    class_list = repo.list()
    cls = next((c for c in class_list if c.get('id') == class_id), None)
    if not cls:
        raise RecordNotFound('Class not found')
    if any((c.get('name') or '').lower() == new_name.lower() and c.get('id') != class_id for c in class_list):
        raise ValueError(f'A class named "{new_name}" already exists.')

    old_name = cls.get('name')
    cls['name'] = new_name
    repo.replace_all(class_list)

    student_list = students(store).list()
    moved = 0
    for student in student_list:
        if student.get('className') == old_name:
            student['className'] = new_name
            moved += 1
    if moved:
        students(store).replace_all(student_list)
    return moved


def delete_class(store, class_id):
    """Delete a class without touching students. Returns how many students now dangle."""
    repo = classes(store)
    cls = repo.get(class_id)
    if not cls:
        raise RecordNotFound('Class not found')
    repo.delete(class_id)
    dangling = len(get_students_by_class(store, cls.get('name')))
    if dangling:
        logging.warning("Class %s deleted with %s students still referencing it.", cls.get('name'), dangling)
    return dangling


# ==================== STUDENTS ====================

def get_all_students(store):
    return students(store).list()


def get_student(store, student_id):
    return students(store).get(student_id)


def get_students_by_class(store, class_name):
    return [s for s in students(store).list() if s.get('className') == class_name]


def create_student(store, name, class_id, photo_url=None):
    name = ' '.join((name or '').split())
    if not name:
        raise ValueError('Student name is required.')
    cls = classes(store).get(class_id)
    if not cls:
        raise RecordNotFound('Class not found')
    student = {'id': f's-{secrets.token_hex(6)}', 'name': name, 'className': cls['name']}
    if photo_url:
        student['photoUrl'] = photo_url
    students(store).put(student)
    return student


def update_student(store, student_id, name=None, class_id=None, photo_url=None):
    """Merge name/class/photo changes into an existing student."""
    repo = students(store)
    student = repo.get(student_id)
    if not student:
        raise RecordNotFound('Student not found')
    if name is not None:
        name = ' '.join(name.split())
        if not name:
            raise ValueError('Student name is required.')
        student['name'] = name
    if class_id:
        cls = classes(store).get(class_id)
        if not cls:
            raise RecordNotFound('Class not found')
        student['className'] = cls['name']
    if photo_url is not None:
        student['photoUrl'] = photo_url
    repo.put(student)
    return student


def delete_student(store, student_id):
    """Delete a student and all of their marks. Returns the number of marks removed."""
    if not students(store).delete(student_id):
        raise RecordNotFound('Student not found')
    mark_list = marks(store).list()
    kept = [m for m in mark_list if m.get('studentId') != student_id]
    marks(store).replace_all(kept)
    return len(mark_list) - len(kept)


# ==================== MARKS ====================

@dataclass(frozen=True)
class SetScore:
    score: int


@dataclass(frozen=True)
class DeleteScore:
    pass


DELETE_SCORE = DeleteScore()


@dataclass(frozen=True)
class MarkEntry:
    student_id: str
    subject_id: str
    year: str
    term: str
    change: object

    @property
    def key(self):
        return (self.student_id, self.subject_id, self.year, self.term)


def parse_score_change(raw):
    """Turn raw form input into SetScore/DeleteScore. Blank clears the mark."""
    text = '' if raw is None else str(raw).strip()
    if not text:
        return DELETE_SCORE
    try:
        value = float(text)
    except ValueError:
        raise ValueError(f'Invalid score "{text}". Enter a whole number between 0 and 100.')
    if not math.isfinite(value) or not value.is_integer():
        raise ValueError(f'Invalid score "{text}". Enter a whole number between 0 and 100.')
    if value == -1:
        return DELETE_SCORE
    if value < 0 or value > 100:
        raise ValueError('Score must be between 0 and 100.')
    return SetScore(int(value))


def save_marks_batch(store, entries):
    """Upsert or delete one mark per entry key. Idempotent for the same batch."""
    repo = marks(store)
    mark_list = repo.list()
    for entry in entries:
        mark_list = [m for m in mark_list if repo.key_of(m) != entry.key]
        if isinstance(entry.change, SetScore):
            mark_list.append({
                'studentId': entry.student_id,
                'subjectId': entry.subject_id,
                'year': entry.year,
                'term': entry.term,
                'score': int(entry.change.score),
            })
    repo.replace_all(mark_list)


def get_marks(store):
    return marks(store).list()


def get_student_marks(store, student_id, year, term):
    return [
        m for m in marks(store).list()
        if m.get('studentId') == student_id and m.get('year') == year and m.get('term') == term
    ]


def get_student_year_marks(store, student_id, year):
    return [m for m in marks(store).list() if m.get('studentId') == student_id and m.get('year') == year]


# ==================== PROMOTION DECISIONS ====================

def set_promotion_decision(store, student_id, year, decision):
    """Record a reviewer's promotion decision; a blank decision clears it."""
    if not students(store).get(student_id):
        raise RecordNotFound('Student not found')
    decision = (decision or '').strip()
    repo = promotion_decisions(store)
    if not decision:
        repo.delete((student_id, year))
        return None
    if decision not in PROMOTION_DECISIONS:
        raise ValueError(f'Decision must be one of: {", ".join(PROMOTION_DECISIONS)}.')
    record = {'studentId': student_id, 'year': year, 'decision': decision}
    repo.put(record)
    return record


def get_promotion_decision(store, student_id, year):
    record = promotion_decisions(store).get((student_id, year))
    return record.get('decision', '') if record else ''


# ==================== CONFIG ====================

def get_school_config(store):
    config = dict(CONFIG_DEFAULTS)
    config.update(store.get_dict(CONFIG_KEY))
    return config


def save_school_config(store, **fields):
    """Merge the given fields into the stored config."""
    unknown = set(fields) - set(CONFIG_FIELDS)
    if unknown:
        raise ValueError(f'Unknown config fields: {", ".join(sorted(unknown))}')
    current = store.get_dict(CONFIG_KEY)
    current.update({k: v for k, v in fields.items() if v is not None})
    store.set(CONFIG_KEY, current)
    return get_school_config(store)


def get_school_logo(store):
    return store.get_dict(CONFIG_KEY).get('logoUrl') or DEFAULT_SCHOOL_LOGO


def save_school_logo(store, logo_url):
    save_school_config(store, logoUrl=logo_url)


def get_headmaster_name(store):
    return get_school_config(store).get('headmasterName', '')


# ==================== BACKUP ====================

def export_database(store):
    """Serialize users, classes, students, marks and config into one JSON document."""
    data = {
        'users': users(store).list(),
        'classes': classes(store).list(),
        'students': students(store).list(),
        'marks': marks(store).list(),
        'config': store.get_dict(CONFIG_KEY),
        'promotionDecisions': promotion_decisions(store).list(),
        'timestamp': datetime.now().isoformat(),
        'version': BACKUP_VERSION,
    }
    return json.dumps(data, indent=2)


def backup_format_error(data):
    """Describe what is wrong with a parsed backup document, or return None when it is usable."""
    if not isinstance(data, dict):
        return 'backup must be a JSON object'
    for required in ('users', 'classes', 'students'):
        if not isinstance(data.get(required), list):
            return f'missing {required}'
    if 'marks' in data and not isinstance(data['marks'], list):
        return 'marks must be a list'
    if 'config' in data and not isinstance(data['config'], dict):
        return 'config must be an object'
    return None


def import_database(store, json_string):
    """Overwrite collections from a backup. Returns False and writes nothing on bad input."""
    try:
        data = json.loads(json_string)
    except (TypeError, ValueError) as e:
        logging.error("Database import failed: %s", e)
        return False

    problem = backup_format_error(data)
    if problem:
        logging.error("Invalid database file format: %s", problem)
        return False

    store.set(USERS_KEY, data['users'])
    store.set(CLASSES_KEY, data['classes'])
    store.set(STUDENTS_KEY, data['students'])
    if 'marks' in data:
        store.set(MARKS_KEY, data['marks'])
    if data.get('config'):
        store.set(CONFIG_KEY, data['config'])
    if isinstance(data.get('promotionDecisions'), list):
        store.set(DECISIONS_KEY, data['promotionDecisions'])
    logging.info("Database imported: %s users, %s classes, %s students",
                 len(data['users']), len(data['classes']), len(data['students']))
    return True
