"""
Voting credential lifecycle: issuance, scan resolution and staff validation.

A credential moves PENDING -> VALIDATED -> CONSUMED. EXPIRED is derived from
timestamps and is only reachable from PENDING. Every state change is a
conditional UPDATE whose WHERE clause re-asserts the guard, so concurrent
requests race on the database rather than in Python.
"""
import json
import logging
import re
import secrets
import string
from collections import namedtuple

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from errors import (AlreadyUsed, AlreadyValidated, AlreadyVoted, Expired,
                    Forbidden, FormatUnrecognized, InvalidRequest, NotFound,
                    StorageFailure)
from models import User, VotingCredential, atomic, db, record_audit, utcnow

logger = logging.getLogger(__name__)

PENDING = 'PENDING'
VALIDATED = 'VALIDATED'
CONSUMED = 'CONSUMED'
EXPIRED = 'EXPIRED'

VALIDATOR_ROLES = ('staff', 'admin', 'super_admin')

REDEEM_ALPHABET = string.ascii_uppercase + string.digits
ISSUE_ATTEMPTS = 5

# Parsed form of a scanned string; kind is one of 'json', 'legacy', 'redeem'.
ScanPayload = namedtuple('ScanPayload', 'kind owner_id redeem_code qr_payload')


def credential_ttl():
    return current_app.config['VOTING_CREDENTIAL_TTL']


def effective_expiry(credential):
    """Stored expiry clamped to the creation-time ceiling."""
    ceiling = credential.created_at + credential_ttl()
    return min(credential.expires_at, ceiling)


def is_expired(credential, now=None):
    now = now or utcnow()
    return now > effective_expiry(credential)


def credential_state(credential, now=None):
    if credential.is_used:
        return CONSUMED
    if credential.is_validated:
        return VALIDATED
    if is_expired(credential, now):
        return EXPIRED
    return PENDING


def _generate_qr_payload():
    prefix = current_app.config['CREDENTIAL_PAYLOAD_PREFIX']
    return prefix + secrets.token_hex(12).upper()


def _generate_redeem_code():
    length = current_app.config['REDEEM_CODE_LENGTH']
    return ''.join(secrets.choice(REDEEM_ALPHABET) for _ in range(length))


def _unique_codes():
    # The unique constraints are the real guarantee; this only avoids a
    # needless IntegrityError round-trip.
    while True:
        qr_payload = _generate_qr_payload()
        redeem_code = _generate_redeem_code()
        taken = VotingCredential.query.filter(
            (VotingCredential.qr_payload == qr_payload) |
            (VotingCredential.redeem_code == redeem_code)
        ).first()
        if taken is None:
            return qr_payload, redeem_code


def _find_live_credential(voter_id, now):
    ttl = credential_ttl()
    return (VotingCredential.query
            .filter(VotingCredential.voter_id == voter_id,
                    VotingCredential.is_used.is_(False),
                    VotingCredential.expires_at > now,
                    VotingCredential.created_at > now - ttl)
            .order_by(VotingCredential.created_at.desc())
            .first())


def get_active_credential(voter_id):
    """The voter's live (unexpired, unused) credential, or None."""
    return _find_live_credential(voter_id, utcnow())


def issue_credential(voter_id):
    """
    Return the voter's live credential, creating one if none exists.

    Issuance is idempotent while a credential is live. Expired unused
    credentials of the voter are purged before a new one is created.
    """
    for attempt in range(ISSUE_ATTEMPTS):
        try:
            with atomic() as session:
                now = utcnow()
                voter = (User.query.filter_by(id=voter_id)
                         .with_for_update().first())
                if voter is None:
                    raise NotFound('Voter not found')
                if voter.has_voted:
                    raise AlreadyVoted('User has already voted')

                # Purging first also takes the write lock on SQLite, which
                # serialises concurrent issuance for the same store.
                session.execute(
                    delete(VotingCredential)
                    .where(VotingCredential.voter_id == voter_id,
                           VotingCredential.is_used.is_(False),
                           (VotingCredential.expires_at <= now) |
                           (VotingCredential.created_at <= now - credential_ttl()))
                    .execution_options(synchronize_session='fetch'))

                existing = _find_live_credential(voter_id, now)
                if existing is not None:
                    ceiling = existing.created_at + credential_ttl()
                    if existing.expires_at > ceiling:
                        existing.expires_at = ceiling
                    credential = existing
                else:
                    qr_payload, redeem_code = _unique_codes()
                    credential = VotingCredential(
                        voter_id=voter_id,
                        qr_payload=qr_payload,
                        redeem_code=redeem_code,
                        created_at=now,
                        expires_at=now + credential_ttl(),
                    )
                    session.add(credential)
                    session.flush()
                    logger.info('Issued credential %s to voter %s', credential.id, voter_id)
            return credential
        except IntegrityError:
            logger.warning('Credential code collision for voter %s (attempt %d)',
                           voter_id, attempt + 1)
    logger.error('Gave up allocating credential codes for voter %s', voter_id)
    raise StorageFailure()


#  Scan resolution

JSON_OWNER_FIELDS = ('userId', 'voterId')
LEGACY_MIN_LENGTH = 13


def classify_scan(raw):
    """
    Work out which credential format a scanned string is in.

    Formats are tried strictly in order: structured JSON, the legacy prefixed
    QR payload, then a bare redeem code. Raises FormatUnrecognized when none
    match.
    """
    if not isinstance(raw, str):
        raise FormatUnrecognized()
    text = raw.strip()

    try:
        doc = json.loads(text)
    except ValueError:
        doc = None
    if isinstance(doc, dict):
        owner_id = next((doc[f] for f in JSON_OWNER_FIELDS if doc.get(f)), None)
        code = doc.get('redeemCode')
        if owner_id and isinstance(code, str) and code:
            return ScanPayload('json', owner_id, code.strip().upper(), None)

    prefix = current_app.config['CREDENTIAL_PAYLOAD_PREFIX']
    if text.startswith(prefix) and len(text) > LEGACY_MIN_LENGTH:
        return ScanPayload('legacy', None, None, text)

    length = current_app.config['REDEEM_CODE_LENGTH']
    code = text.upper()
    if re.fullmatch(r'[A-Z0-9]{%d}' % length, code):
        return ScanPayload('redeem', None, code, None)

    raise FormatUnrecognized()


def resolve_scanned_payload(raw):
    """Map raw scanner output to a single credential."""
    scan = classify_scan(raw)
    query = VotingCredential.query

    if scan.kind == 'json':
        credential = query.filter_by(redeem_code=scan.redeem_code).first()
        if credential is not None and str(credential.voter_id) != str(scan.owner_id):
            logger.warning('Scanned code %s does not belong to user %s',
                           scan.redeem_code, scan.owner_id)
            credential = None
    elif scan.kind == 'legacy':
        credential = query.filter(
            VotingCredential.qr_payload == scan.qr_payload,
            VotingCredential.is_validated.is_(False),
            VotingCredential.is_used.is_(False),
            VotingCredential.expires_at > utcnow(),
        ).first()
    else:
        # Expiry is left to the validator so staff see "expired", not "not found".
        credential = query.filter(
            VotingCredential.redeem_code == scan.redeem_code,
            VotingCredential.is_validated.is_(False),
            VotingCredential.is_used.is_(False),
        ).first()

    if credential is None:
        raise NotFound('Credential not found or already validated')
    return credential


#  Validation

def _lookup(credential_id=None, redeem_code=None):
    if credential_id is not None:
        return db.session.get(VotingCredential, credential_id)
    return VotingCredential.query.filter_by(redeem_code=str(redeem_code).strip().upper()).first()


def _check_guards(credential, now):
    if credential is None:
        raise NotFound('Invalid QR code or redeem code')
    if credential.is_validated:
        raise AlreadyValidated(credential_id=credential.id)
    if credential.is_used:
        raise AlreadyUsed(credential_id=credential.id)
    if is_expired(credential, now):
        raise Expired(credential_id=credential.id)


def validate_credential(staff_id, credential_id=None, redeem_code=None, ip_address=None):
    """
    Staff confirmation that a present voter's credential is genuine.

    Exactly one of any number of concurrent calls for the same credential
    succeeds; the rest see AlreadyValidated.
    """
    if credential_id is None and not redeem_code:
        raise InvalidRequest('QR code or redeem code is required')

    staff = db.session.get(User, staff_id)
    if staff is None or staff.role not in VALIDATOR_ROLES:
        raise Forbidden()

    with atomic() as session:
        now = utcnow()
        credential = _lookup(credential_id, redeem_code)
        _check_guards(credential, now)

        ceiling = credential.created_at + credential_ttl()
        result = session.execute(
            update(VotingCredential)
            .where(VotingCredential.id == credential.id,
                   VotingCredential.is_validated.is_(False),
                   VotingCredential.is_used.is_(False),
                   VotingCredential.expires_at >= now,
                   VotingCredential.created_at >= now - credential_ttl())
            .values(is_validated=True,
                    validated_by=staff.id,
                    validated_at=now,
                    expires_at=min(credential.expires_at, ceiling))
            .execution_options(synchronize_session=False))

        if result.rowcount != 1:
            # Lost the race: report what the winner left behind.
            session.refresh(credential)
            _check_guards(credential, now)
            raise AlreadyValidated(credential_id=credential.id)

        record_audit(staff.id, 'VALIDATE_SESSION', target=credential.voter_id, details={
            'sessionId': credential.id,
            'qrCode': credential.qr_payload,
            'redeemCode': credential.redeem_code,
        }, ip_address=ip_address)

    session.refresh(credential)
    logger.info('Staff %s validated credential %s for voter %s',
                staff.id, credential.id, credential.voter_id)
    return credential


def pending_credentials():
    now = utcnow()
    return (VotingCredential.query
            .filter(VotingCredential.is_validated.is_(False),
                    VotingCredential.is_used.is_(False),
                    VotingCredential.expires_at >= now,
                    VotingCredential.created_at >= now - credential_ttl())
            .order_by(VotingCredential.created_at.desc())
            .all())


def recent_validations(limit=10):
    return (VotingCredential.query
            .filter(VotingCredential.is_validated.is_(True))
            .order_by(VotingCredential.validated_at.desc())
            .limit(limit)
            .all())
