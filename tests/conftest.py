import itertools
from datetime import timedelta

import pytest

from app import create_app
from config import TestConfig
from models import Candidate, User, db

_seq = itertools.count(1)


@pytest.fixture
def app(tmp_path):
    app = create_app(TestConfig, {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'voting.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {
            'connect_args': {'timeout': 30, 'check_same_thread': False},
        },
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def long_ttl(app):
    app.config['VOTING_CREDENTIAL_TTL'] = timedelta(hours=24)
    return app.config['VOTING_CREDENTIAL_TTL']


@pytest.fixture
def make_user(app):
    def factory(role='voter', password=None, **fields):
        n = next(_seq)
        fields.setdefault('email', f'user{n}@student.example.ac.id')
        fields.setdefault('name', f'User {n}')
        if role == 'voter':
            fields.setdefault('nim', f'1212{n:04d}')
        user = User(role=role, **fields)
        if password:
            user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return factory


@pytest.fixture
def voter(make_user):
    return make_user(password='voter-pass')


@pytest.fixture
def staff(make_user):
    return make_user(role='staff', password='staff-pass')


@pytest.fixture
def make_candidate(app):
    def factory(name='Candidate', is_active=True, **fields):
        candidate = Candidate(name=name, is_active=is_active, **fields)
        db.session.add(candidate)
        db.session.commit()
        return candidate
    return factory


@pytest.fixture
def candidate(make_candidate):
    return make_candidate(name='Andi Pratama', program='Informatika',
                          platform='Transparansi dan inovasi kampus.')


@pytest.fixture
def login(client):
    def do_login(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
            sess['role'] = user.role
        return client
    return do_login
