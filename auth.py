import logging
from functools import wraps

from flask import session

from errors import Forbidden, InvalidRequest, NotFound, Unauthorized
from models import ROLES, User, atomic, db, record_audit

logger = logging.getLogger(__name__)

ADMIN_ROLES = ('admin', 'super_admin')
MONITOR_ROLES = ('admin', 'super_admin', 'monitor')


def current_user():
    user_id = session.get('user_id')
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def login_user(user):
    session.clear()
    session['user_id'] = user.id
    session['role'] = user.role
    session.permanent = True


def logout_user():
    session.clear()


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_user() is None:
            raise Unauthorized()
        return view(*args, **kwargs)
    return wrapped


def roles_required(*roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = current_user()
            if user is None:
                raise Unauthorized()
            if user.role not in roles:
                raise Forbidden('Unauthorized')
            return view(*args, **kwargs)
        return wrapped
    return decorator


def change_user_role(admin_id, user_id, role, ip_address=None):
    """
    Give an account a new role and record who did it.

    Only a super admin may grant or take away the super_admin role.
    """
    if role not in ROLES:
        raise InvalidRequest('Invalid role')

    admin = db.session.get(User, admin_id)
    if admin is None or admin.role not in ADMIN_ROLES:
        raise Forbidden()

    with atomic():
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound('User not found')
        previous = user.role
        if 'super_admin' in (previous, role) and admin.role != 'super_admin':
            raise Forbidden('Only a super admin can change super admin accounts')

        user.role = role
        record_audit(admin.id, 'UPDATE_USER_ROLE', target=user.id,
                     details={'from': previous, 'to': role}, ip_address=ip_address)

    logger.info('Admin %s changed role of user %s from %s to %s',
                admin.id, user.id, previous, role)
    return user
