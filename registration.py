"""
School registration and approval workflow.

A public registration lands as ``pending`` in the platform-wide registration
list and is cached on the new school's tenant. A super admin moves it exactly
once to ``approved`` (which activates the school and its admin account) or
``rejected``. Listeners subscribe to RegistrationEvents instead of polling.
"""

import logging
import re
import secrets
from datetime import datetime

from werkzeug.security import generate_password_hash

from record_store import ALL_REGISTRATIONS_KEY, REGISTRATION_KEY
from school_records import (
    ROLE_ADMIN, RecordNotFound, create_user, ensure_seeded, save_school_config, users,
)

STATUS_PENDING = 'pending'
STATUS_APPROVED = 'approved'
STATUS_REJECTED = 'rejected'
FINAL_STATUSES = (STATUS_APPROVED, STATUS_REJECTED)

# Subscription price per plan, in FRW.
PLAN_PRICES = {'term': 30000, 'year': 90000}

REQUIRED_FIELDS = (
    'schoolName', 'district', 'sector', 'phone', 'address',
    'adminName', 'adminEmail', 'adminPassword', 'plan', 'paymentScreenshot',
)

DEFAULT_POLL_SECONDS = 5


class RegistrationEvents:
    """Callback registry for registration changes."""

    def __init__(self):
        self._subscribers = []

    def subscribe(self, callback):
        """Register ``callback(event_name, registration)``; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def emit(self, event_name, registration):
        for callback in list(self._subscribers):
            try:
                callback(event_name, registration)
            except Exception:
                logging.exception("Registration subscriber failed on %s", event_name)


events = RegistrationEvents()


def is_valid_email(value):
    """Simple email validation for usernames that must be emails."""
    email = (value or '').strip()
    return bool(re.fullmatch(r'^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$', email))


def public_registration(reg):
    """Copy of a registration without the admin password hash."""
    if not reg:
        return None
    return {k: v for k, v in reg.items() if k != 'adminPassword'}


def submit_registration(platform_store, store_for_tenant, data, event_bus=None):
    """Validate and queue a new school registration. Returns the stored registration."""
    cleaned = {k: (data.get(k) or '').strip() if isinstance(data.get(k), str) else data.get(k)
               for k in REQUIRED_FIELDS}
    missing = [k for k in REQUIRED_FIELDS if not cleaned.get(k)]
    if missing:
        raise ValueError(f'Missing registration fields: {", ".join(missing)}.')
    if cleaned['plan'] not in PLAN_PRICES:
        raise ValueError('Plan must be "term" or "year".')
    admin_email = cleaned['adminEmail'].lower()
    if not is_valid_email(admin_email):
        raise ValueError('Admin email must be a valid email address.')

    reg = dict(cleaned)
    reg.update({
        'id': f'reg-{secrets.token_hex(6)}',
        'adminEmail': admin_email,
        'adminPassword': generate_password_hash(cleaned['adminPassword']),
        'status': STATUS_PENDING,
        'registrationDate': datetime.now().isoformat(),
    })

    registrations = platform_store.get_list(ALL_REGISTRATIONS_KEY)
    registrations.append(reg)
    platform_store.set(ALL_REGISTRATIONS_KEY, registrations)

    tenant_store = store_for_tenant(reg['id'])
    tenant_store.set(REGISTRATION_KEY, reg)
    save_school_config(
        tenant_store,
        headmasterName=reg['adminName'],
        district=reg['district'],
        sector=reg['sector'],
        phone=reg['phone'],
        motto='',
    )

    logging.info("Registration submitted: %s (%s)", reg['schoolName'], reg['id'])
    (event_bus or events).emit('submitted', public_registration(reg))
    return reg


def update_registration_status(platform_store, store_for_tenant, reg_id, status, event_bus=None):
    """
    Move a pending registration to approved or rejected.

    Returns (registration, admin_created). Approval creates the school's ADMIN
    account keyed by the admin email unless that username already exists.
    """
    if status not in FINAL_STATUSES:
        raise ValueError(f'Unknown registration status "{status}".')
    registrations = platform_store.get_list(ALL_REGISTRATIONS_KEY)
    reg = next((r for r in registrations if r.get('id') == reg_id), None)
    if not reg:
        raise RecordNotFound('Registration not found')
    if reg.get('status') != STATUS_PENDING:
        raise ValueError(f'Registration is already {reg.get("status")}.')

    reg['status'] = status
    reg['reviewedAt'] = datetime.now().isoformat()
    platform_store.set(ALL_REGISTRATIONS_KEY, registrations)

    tenant_store = store_for_tenant(reg_id)
    tenant_store.set(REGISTRATION_KEY, reg)

    admin_created = False
    if status == STATUS_APPROVED:
        ensure_seeded(tenant_store)
        if not users(tenant_store).get(reg['adminEmail']):
            create_user(
                tenant_store,
                username=reg['adminEmail'],
                name=reg.get('adminName'),
                role=ROLE_ADMIN,
                email=reg['adminEmail'],
                school_id=reg_id,
                password_hash=reg['adminPassword'],
            )
            admin_created = True

    logging.info("Registration %s for %s marked %s", reg_id, reg.get('schoolName'), status)
    (event_bus or events).emit(status, public_registration(reg))
    return reg, admin_created


def get_registration(tenant_store):
    """The registration cached on a school tenant, if any."""
    reg = tenant_store.get(REGISTRATION_KEY)
    return public_registration(reg) if isinstance(reg, dict) else None


def get_all_registrations(platform_store):
    """All registrations, newest first."""
    registrations = platform_store.get_list(ALL_REGISTRATIONS_KEY)
    ordered = sorted(registrations, key=lambda r: r.get('registrationDate') or '', reverse=True)
    return [public_registration(r) for r in ordered]


def pending_count(registrations):
    return sum(1 for r in registrations if r.get('status') == STATUS_PENDING)


def approved_revenue(registrations):
    return sum(PLAN_PRICES.get(r.get('plan'), 0) for r in registrations if r.get('status') == STATUS_APPROVED)


def registration_feed(platform_store, poll_seconds=DEFAULT_POLL_SECONDS):
    """Snapshot for the reviewer view; clients re-read it every ``pollSeconds``."""
    registrations = get_all_registrations(platform_store)
    return {
        'registrations': registrations,
        'total': len(registrations),
        'pendingCount': pending_count(registrations),
        'approvedRevenue': approved_revenue(registrations),
        'pollSeconds': poll_seconds,
    }
