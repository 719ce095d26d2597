import logging
from contextlib import contextmanager
from datetime import datetime, timezone

import bcrypt
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import StorageFailure, VotingError

db = SQLAlchemy()
logger = logging.getLogger(__name__)

ROLES = ('voter', 'staff', 'admin', 'super_admin', 'monitor')


def utcnow():
    # Naive UTC, the form SQLite hands back for DateTime columns.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    nim = db.Column(db.String(20), unique=True, nullable=True)
    program = db.Column(db.String(100), nullable=True)
    password_hash = db.Column(db.String(128), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='voter')
    has_voted = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def set_password(self, password):
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def check_password(self, password):
        if not self.password_hash:
            return False
        return bcrypt.checkpw(password.encode('utf-8'), self.password_hash.encode('utf-8'))

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'nim': self.nim,
            'program': self.program,
            'role': self.role,
            'has_voted': self.has_voted,
        }


class Candidate(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    nim = db.Column(db.String(20), nullable=True)
    program = db.Column(db.String(100), nullable=True)
    platform = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'nim': self.nim,
            'program': self.program,
            'platform': self.platform,
        }


#  Voting credential (QR payload + redeem code)
class VotingCredential(db.Model):
    __tablename__ = 'voting_credential'
    # Purged credential ids must never be handed out again; audit entries cite them.
    __table_args__ = {'sqlite_autoincrement': True}

    id = db.Column(db.Integer, primary_key=True)
    voter_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    qr_payload = db.Column(db.String(64), unique=True, nullable=False)
    redeem_code = db.Column(db.String(16), unique=True, nullable=False)
    is_validated = db.Column(db.Boolean, nullable=False, default=False)
    is_used = db.Column(db.Boolean, nullable=False, default=False)
    validated_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    validated_at = db.Column(db.DateTime, nullable=True)
    used_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    voter = db.relationship('User', foreign_keys=[voter_id], backref='credentials')
    validator = db.relationship('User', foreign_keys=[validated_by])

    def to_dict(self, include_voter=False):
        data = {
            'id': self.id,
            'voter_id': self.voter_id,
            'qr_payload': self.qr_payload,
            'redeem_code': self.redeem_code,
            'is_validated': self.is_validated,
            'is_used': self.is_used,
            'validated_by': self.validated_by,
            'validated_at': self.validated_at.isoformat() if self.validated_at else None,
            'expires_at': self.expires_at.isoformat(),
            'created_at': self.created_at.isoformat(),
        }
        if include_voter and self.voter is not None:
            data['voter'] = {
                'name': self.voter.name,
                'nim': self.voter.nim,
                'email': self.voter.email,
                'program': self.voter.program,
            }
        return data


#  Vote
class Vote(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    voter_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    candidate_id = db.Column(db.Integer, db.ForeignKey('candidate.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    voter = db.relationship('User', backref=db.backref('vote', uselist=False))
    candidate = db.relationship('Candidate', backref='votes')
    __table_args__ = (
        db.UniqueConstraint('voter_id', name='unique_vote_per_voter'),
        {'sqlite_autoincrement': True},
    )


# Audit trail of staff actions
class AuditLog(db.Model):
    __tablename__ = 'audit_log'
    __table_args__ = {'sqlite_autoincrement': True}

    id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    action = db.Column(db.String(50), nullable=False)
    target = db.Column(db.String(50), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    staff = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'staff_id': self.staff_id,
            'staff_name': self.staff.name if self.staff else None,
            'action': self.action,
            'target': self.target,
            'details': self.details,
            'ip_address': self.ip_address,
            'created_at': self.created_at.isoformat(),
        }


def record_audit(staff_id, action, target=None, details=None, ip_address=None):
    """Append an audit entry to the current transaction; the caller commits."""
    entry = AuditLog(staff_id=staff_id, action=action,
                     target=str(target) if target is not None else None,
                     details=details, ip_address=ip_address)
    db.session.add(entry)
    return entry


@contextmanager
def atomic():
    """
    Run a unit of work in one transaction.

    Commits on success and rolls back on any error. Lifecycle errors and
    IntegrityError propagate unchanged so callers can map them; every other
    database error is logged and replaced by an opaque StorageFailure.
    """
    try:
        yield db.session
        db.session.commit()
    except (VotingError, IntegrityError):
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception('Storage failure: %s', e)
        raise StorageFailure() from e
