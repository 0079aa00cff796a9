import os
from datetime import date
from types import SimpleNamespace

os.environ['FLASK_ENV'] = 'testing'

import pytest

from app import app as flask_app
from database import db
from models import Employee, EmployeeRating, Skill, SkillCategory, Subskill
from projects import create_project

PASSWORD = 'password123'


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(full_name, role='employee', status='active'):
        email = full_name.lower().replace(' ', '.') + '@acme.io'
        user = Employee(full_name=full_name, email=email, role=role, status=status)
        user.set_password(PASSWORD)
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def login(client):
    def _login(user):
        response = client.post('/api/auth/login', json={'email': user.email, 'password': PASSWORD})
        assert response.status_code == 200, response.get_json()
        return response
    return _login


@pytest.fixture
def taxonomy_data(app):
    """Backend > Python > (Django, Flask) and Backend > SQL without subskills."""
    category = SkillCategory(name='Backend', color='#3B82F6')
    python = Skill(name='Python', category=category)
    flask = Subskill(name='Flask', skill=python)
    django = Subskill(name='Django', skill=python)
    sql = Skill(name='SQL', category=category)
    db.session.add_all([category, python, flask, django, sql])
    db.session.commit()
    return SimpleNamespace(category=category, python=python, flask=flask, django=django, sql=sql)


@pytest.fixture
def give_rating(app):
    def _give_rating(user, subskill, level, status='approved'):
        rating = EmployeeRating(user_id=user.id, skill_id=subskill.skill_id, subskill_id=subskill.id,
                                rating=level, status=status)
        db.session.add(rating)
        db.session.commit()
        return rating
    return _give_rating


@pytest.fixture
def make_project(app, taxonomy_data):
    """Create a project Jan-Mar 2030 through the service layer."""
    def _make_project(creator, members, status=None, name='Apollo',
                      start_date=date(2030, 1, 1), end_date=date(2030, 3, 31)):
        project = create_project({
            'name': name,
            'customer_name': 'Acme',
            'description': 'Platform migration',
            'start_date': start_date,
            'end_date': end_date,
            'required_skills': [{'subskill_id': taxonomy_data.flask.id, 'required_rating': 'medium'}],
            'members': members,
        }, creator)
        if status:
            project.status = status
        db.session.commit()
        return project
    return _make_project
