"""Roles, landing pages and the admin-creation code.

The admin-creation code is a shared secret that gates registering with the
``admin`` role.  Only a PBKDF2 hash of it is stored (in :class:`AppConfig`)
and candidates are verified on the server, so the code itself is never sent
to a browser.
"""
import os
import re

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .models import AppConfig, DEFAULT_MIN_WITHDRAWAL, ROLE_ADMIN, ROLE_USER

ADMIN_CODE_ITERATIONS = 390000

LANDING_ENDPOINTS = {
    ROLE_USER: 'dashboard',
    ROLE_ADMIN: 'admin_dashboard',
}

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_RE = re.compile(r'^(?:\+88|01)?\d{11}$')


def landing_endpoint(user):
    return LANDING_ENDPOINTS.get(getattr(user, 'role', None), 'index')


def valid_email(value):
    return bool(value) and bool(EMAIL_RE.match(value))


def valid_phone(value):
    return bool(value) and bool(PHONE_RE.match(value))


def valid_ffid(value):
    return bool(value) and 6 <= len(value) <= 20


# ---------- Global settings ----------

def get_setting(session, key, default=None):
    row = session.get(AppConfig, key)
    if row is None or row.value is None:
        return default
    return row.value


def set_setting(session, key, value):
    row = session.get(AppConfig, key)
    if row is None:
        row = AppConfig(key=key)
        session.add(row)
    row.value = None if value is None else str(value)
    return row


def min_withdrawal(session, default=DEFAULT_MIN_WITHDRAWAL):
    raw = get_setting(session, 'min_withdrawal')
    try:
        return int(raw) if raw is not None else int(default)
    except ValueError:
        return int(default)


# ---------- Admin creation code ----------

def _kdf(salt):
    return PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt,
                      iterations=ADMIN_CODE_ITERATIONS)


def admin_code_configured(session):
    return get_setting(session, 'admin_code_hash') is not None


def set_admin_code(session, code):
    """Store a new admin-creation code; the caller commits."""
    salt = os.urandom(16)
    digest = _kdf(salt).derive(code.encode())
    set_setting(session, 'admin_code_salt', salt.hex())
    set_setting(session, 'admin_code_hash', digest.hex())


def verify_admin_code(session, candidate):
    stored = get_setting(session, 'admin_code_hash')
    salt = get_setting(session, 'admin_code_salt')
    if not stored or not salt or not candidate:
        return False
    try:
        _kdf(bytes.fromhex(salt)).verify(candidate.encode(), bytes.fromhex(stored))
    except InvalidKey:
        return False
    return True
