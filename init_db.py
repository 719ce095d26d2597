# init_db.py
#
#   VOTING_SUPER_ADMIN_PASSWORD=... python init_db.py
#
# Creates all tables and the bootstrap super-admin account.
import logging

from models import User, db

logger = logging.getLogger(__name__)


def init_db(app, email=None, password=None, name='Super Admin'):
    email = (email or app.config['SUPER_ADMIN_EMAIL']).strip().lower()
    password = password or app.config['SUPER_ADMIN_PASSWORD']

    with app.app_context():
        db.create_all()
        logger.info('Tables created')

        if not password:
            logger.warning('No super-admin password configured, skipping account creation')
            return None

        existing_admin = User.query.filter_by(email=email).first()
        if existing_admin:
            logger.info('Super-admin %s already exists', email)
            return existing_admin.id

        admin = User(email=email, name=name, role='super_admin')
        admin.set_password(password)
        db.session.add(admin)
        db.session.commit()
        logger.info('Super-admin %s added', email)
        return admin.id


if __name__ == '__main__':
    from app import create_app

    init_db(create_app())
