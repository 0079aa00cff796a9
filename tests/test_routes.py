import io

from database import db
from models import AuditLog, EmployeeRating, Project, SkillCategory


def test_unauthenticated_requests_are_sent_to_auth(client):
    response = client.get('/api/auth/me')
    assert response.status_code == 401
    assert response.get_json()['redirect'] == '/auth'


def test_login_rejects_bad_password_and_inactive_users(client, make_user):
    dev = make_user('Dan Dev')
    gone = make_user('Gus Gone', status='inactive')

    response = client.post('/api/auth/login', json={'email': dev.email, 'password': 'wrong'})
    assert response.status_code == 401

    response = client.post('/api/auth/login', json={'email': gone.email, 'password': 'password123'})
    assert response.status_code == 403
    assert AuditLog.query.filter_by(action='Login Refused (Inactive)').count() == 1


def test_login_returns_landing_route(client, make_user, login):
    admin = make_user('Ada Admin', role='admin')
    response = login(admin)
    assert response.get_json()['redirect'] == '/dashboard'

    me = client.get('/api/auth/me').get_json()
    assert me['user']['email'] == admin.email
    assert me['access']['/admin'] is True


def test_page_access_denial_redirects_to_landing(client, make_user, login):
    login(make_user('Dan Dev'))
    response = client.get('/api/approvals')
    assert response.status_code == 403
    assert response.get_json()['redirect'] == '/skills'


def test_only_managers_edit_taxonomy(client, make_user, login):
    login(make_user('Dan Dev'))
    assert client.post('/api/skills/categories', json={'name': 'Cloud'}).status_code == 403

    client.post('/api/auth/logout')
    login(make_user('Mona Manager', role='management'))
    response = client.post('/api/skills/categories', json={'name': 'Cloud', 'color': '#112233'})
    assert response.status_code == 201
    assert response.get_json()['category']['color'] == '#112233'

    duplicate = client.post('/api/skills/categories', json={'name': 'cloud'})
    assert duplicate.status_code == 400
    assert 'already exists' in duplicate.get_json()['error']


def test_invalid_form_data_returns_field_errors(client, make_user, login):
    login(make_user('Mona Manager', role='management'))
    response = client.post('/api/skills/categories', json={'name': 'Cloud', 'color': 'blue'})
    assert response.status_code == 400
    assert 'color' in response.get_json()['errors']


def test_rating_submission_and_approval(client, make_user, login, taxonomy_data):
    dev = make_user('Dan Dev')
    manager = make_user('Mona Manager', role='management')

    login(dev)
    response = client.post('/api/skills/ratings', json={'ratings': [
        {'skill_id': taxonomy_data.python.id, 'subskill_id': taxonomy_data.flask.id, 'rating': 'high'}]})
    assert response.status_code == 200
    rating_id = response.get_json()['saved'][0]['id']

    pending = client.get(f'/api/skills/categories/{taxonomy_data.category.id}/pending').get_json()
    assert [r['id'] for r in pending['ratings']] == [rating_id]

    client.post('/api/auth/logout')
    login(manager)
    groups = client.get('/api/approvals').get_json()['employees']
    assert groups[0]['user_id'] == dev.id

    response = client.post(f'/api/approvals/{rating_id}/approve', json={'comment': 'Nice'})
    assert response.status_code == 200
    assert db.session.get(EmployeeRating, rating_id).status == 'approved'

    again = client.post(f'/api/approvals/{rating_id}/approve', json={})
    assert again.status_code == 400

    client.post('/api/auth/logout')
    login(dev)
    notifications = client.get('/api/notifications').get_json()
    assert notifications['unread_count'] == 1
    client.post('/api/notifications/read-all')
    assert client.get('/api/notifications?unread=1').get_json()['notifications'] == []


def test_invalid_rating_payload_is_rejected(client, make_user, login, taxonomy_data):
    login(make_user('Dan Dev'))
    response = client.post('/api/skills/ratings', json={'ratings': [
        {'skill_id': taxonomy_data.sql.id, 'rating': 'guru'}]})
    assert response.status_code == 400
    assert EmployeeRating.query.count() == 0


def test_project_creation_checks_capacity(client, make_user, login, taxonomy_data):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    login(lead)
    payload = {
        'name': 'Apollo',
        'customer_name': 'Acme',
        'description': 'Platform migration',
        'start_date': '2030-01-01',
        'end_date': '2030-02-28',
        'required_skills': [{'subskill_id': taxonomy_data.flask.id, 'required_rating': 'medium'}],
        'members': [{'user_id': dev.id, 'allocation_percentage': 80}],
    }
    response = client.post('/api/projects', json=payload)
    assert response.status_code == 201
    project = response.get_json()['project']
    assert project['status'] == 'awaiting_approval'

    overbooked = client.post('/api/projects', json=dict(payload, name='Zeus'))
    assert overbooked.status_code == 400
    assert 'available' in overbooked.get_json()['error']
    assert Project.query.count() == 1

    detail = client.get(f"/api/projects/{project['id']}").get_json()['project']
    assert [m['month'] for m in detail['members_by_month']] == ['2030-01', '2030-02']


def test_project_end_date_must_follow_start(client, make_user, login, taxonomy_data):
    login(make_user('Lena Lead', role='tech_lead'))
    response = client.post('/api/projects', json={
        'name': 'Apollo', 'customer_name': 'Acme', 'description': 'x',
        'start_date': '2030-03-01', 'end_date': '2030-01-01'})
    assert response.status_code == 400


def test_employees_cannot_create_or_approve_projects(client, make_user, login, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 20}])

    login(dev)
    assert client.post('/api/projects', json={}).status_code == 403
    response = client.post(f'/api/projects/{project.id}/status', json={'status': 'active'})
    assert response.status_code == 403


def test_project_status_route(client, make_user, login, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 20}])

    login(make_user('Mona Manager', role='management'))
    missing_reason = client.post(f'/api/projects/{project.id}/status', json={'status': 'rejected'})
    assert missing_reason.status_code == 400

    response = client.post(f'/api/projects/{project.id}/status', json={'status': 'active'})
    assert response.status_code == 200
    assert response.get_json()['project']['status'] == 'active'


def test_member_routes_and_history(client, make_user, login, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 20}])

    login(lead)
    response = client.post(f'/api/projects/{project.id}/members',
                           json={'user_id': dev.id, 'month': '2030-01', 'allocation_percentage': 120})
    assert response.status_code == 400

    response = client.post(f'/api/projects/{project.id}/members',
                           json={'user_id': dev.id, 'month': '2030-01', 'allocation_percentage': 45})
    assert response.status_code == 200

    history = client.get(f'/api/projects/{project.id}/history').get_json()['history']
    assert history[0]['kind'] == 'increase'

    assert client.delete(f'/api/projects/{project.id}/members/{dev.id}').get_json()['removed_months'] == 3


def test_capacity_route(client, make_user, login, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    other = make_user('Olga Other')
    make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 35}])

    login(other)
    assert client.get(f'/api/capacity/{dev.id}').status_code == 403

    client.post('/api/auth/logout')
    login(dev)
    data = client.get(f'/api/capacity/{dev.id}?months=2030-01,2030-02').get_json()
    assert data['total'] == 35
    assert data['available'] == 65


def test_manpower_plan_route(client, make_user, login):
    login(make_user('Lena Lead', role='tech_lead'))
    response = client.post('/api/projects/manpower-plan', json={
        'start_date': '2030-01-10', 'end_date': '2030-02-10',
        'month_wise_manpower': [{'month': '2030-02', 'limit': 2}]})
    assert response.get_json()['month_wise_manpower'] == [
        {'month': '2030-01', 'limit': 0}, {'month': '2030-02', 'limit': 2}]

    bad = client.post('/api/projects/manpower-plan', json={'start_date': 'soon', 'end_date': '2030-02-10'})
    assert bad.status_code == 400


def test_skills_csv_export_and_import(client, make_user, login, taxonomy_data):
    login(make_user('Mona Manager', role='management'))

    export = client.get('/api/skills/export')
    assert export.mimetype == 'text/csv'
    assert 'attachment;filename=skills_hierarchy_export_' in export.headers['Content-Disposition']
    assert '"Backend","Python","Flask",""' in export.get_data(as_text=True)

    preview = client.post('/api/skills/import/preview', data={
        'file': (io.BytesIO(b'Category,Skill\nCloud,AWS\n'), 'skills.csv')})
    assert preview.get_json()['total'] == 1

    wrong_type = client.post('/api/skills/import', data={'file': (io.BytesIO(b'x'), 'skills.txt')})
    assert wrong_type.status_code == 400

    imported = client.post('/api/skills/import', json={'csv': 'Category,Skill\nCloud,AWS\n'})
    assert imported.get_json()['imported']['categories'] == 1
    assert SkillCategory.query.filter_by(name='Cloud').count() == 1


def test_explorer_filters_and_export(client, make_user, login, taxonomy_data, give_rating):
    expert = make_user('Eve Expert', role='tech_lead')
    novice = make_user('Nat Novice')
    give_rating(expert, taxonomy_data.flask, 'high')
    give_rating(novice, taxonomy_data.flask, 'low')

    login(expert)
    found = client.get(f'/api/explorer?subskill_id={taxonomy_data.flask.id}&min_rating=medium').get_json()
    assert [e['user_id'] for e in found['employees']] == [expert.id]

    export = client.get('/api/explorer/export?search=nat').get_data(as_text=True)
    lines = export.strip().splitlines()
    assert lines[0].startswith('Name,Email,Role')
    assert len(lines) == 2 and 'Nat Novice' in lines[1]


def test_admin_page_access_override(client, make_user, login):
    admin = make_user('Ada Admin', role='admin')
    dev = make_user('Dan Dev')

    login(admin)
    response = client.put('/api/admin/page-access',
                          json={'role': 'employee', 'route': '/projects', 'has_access': False})
    assert response.status_code == 200
    assert response.get_json()['access']['/projects'] is False

    locked_out = client.put('/api/admin/page-access',
                            json={'role': 'admin', 'route': '/admin', 'has_access': False})
    assert locked_out.status_code == 400

    client.post('/api/auth/logout')
    login(dev)
    assert client.get('/api/projects').status_code == 403
    assert client.get('/api/profile').status_code == 200


def test_admin_user_management(client, make_user, login):
    admin = make_user('Ada Admin', role='admin')
    login(admin)

    response = client.post('/api/admin/users', json={
        'full_name': 'Tom Lead', 'email': 'tom.lead@acme.io', 'password': 'longenough', 'role': 'tech_lead'})
    assert response.status_code == 201
    new_id = response.get_json()['user']['user_id']

    response = client.patch(f'/api/admin/users/{new_id}', json={'status': 'inactive'})
    assert response.get_json()['user']['status'] == 'inactive'

    self_demotion = client.patch(f'/api/admin/users/{admin.id}', json={'role': 'employee'})
    assert self_demotion.status_code == 400

    logs = client.get('/api/admin/audit-log').get_json()
    assert logs['total'] >= 3
    assert logs['logs'][0]['action'] == 'User Updated'


def test_admin_can_clear_job_title(client, make_user, login):
    admin = make_user('Ada Admin', role='admin')
    dev = make_user('Dan Dev')
    dev.job_title = 'Backend Engineer'
    db.session.commit()
    login(admin)

    kept = client.patch(f'/api/admin/users/{dev.id}', json={'status': 'active'})
    assert kept.get_json()['user']['job_title'] == 'Backend Engineer'

    cleared = client.patch(f'/api/admin/users/{dev.id}', json={'job_title': ''})
    assert cleared.status_code == 200
    assert cleared.get_json()['user']['job_title'] is None


def test_non_utf8_csv_upload_is_rejected(client, make_user, login):
    login(make_user('Mona Manager', role='management'))
    response = client.post('/api/skills/import/preview', data={
        'file': (io.BytesIO(b'Category\n\xff\xfe\xfaCloud\n'), 'skills.csv')})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'The CSV file must be UTF-8 encoded.'


def test_profile_update(client, make_user, login):
    dev = make_user('Dan Dev')
    taken = make_user('Tia Taken')
    login(dev)

    response = client.post('/api/profile', json={'full_name': 'Daniel Dev', 'email': taken.email})
    assert response.status_code == 400

    response = client.post('/api/profile', json={'full_name': 'Daniel Dev', 'email': dev.email,
                                                 'phone_number': '555-0100'})
    assert response.status_code == 200
    assert response.get_json()['profile']['full_name'] == 'Daniel Dev'


def test_unknown_routes_return_json(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert response.get_json() == {'success': False, 'error': 'Not found.'}
