from datetime import date

import pytest

import capacity
import projects
from database import db
from errors import CapacityExceededError, PermissionDenied, ValidationError
from models import AllocationHistory, Notification, ProjectAssignment


def test_create_project_allocates_every_month(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')

    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 50}])

    assert project.status == 'awaiting_approval'
    assert project.tech_lead_id == lead.id
    months = sorted(a.month for a in ProjectAssignment.query.filter_by(project_id=project.id))
    assert months == ['2030-01', '2030-02', '2030-03']
    assert [m['month'] for m in project.month_wise_manpower] == months

    history = AllocationHistory.query.filter_by(project_id=project.id).all()
    assert len(history) == 3
    assert {h.change_reason for h in history} == {projects.INITIAL_ASSIGNMENT_REASON}
    assert all(h.previous_allocation is None for h in history)


def test_create_project_rejects_overbooking(make_user, make_project):
    manager = make_user('Mona Manager', role='management')
    dev = make_user('Dan Dev')
    make_project(manager, [{'user_id': dev.id, 'allocation_percentage': 70}], status='active')

    with pytest.raises(CapacityExceededError):
        make_project(manager, [{'user_id': dev.id, 'allocation_percentage': 40}], name='Zeus')
    db.session.rollback()


def test_create_project_requires_skills_and_members(make_user, taxonomy_data):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    data = {
        'name': 'Apollo', 'customer_name': 'Acme', 'description': 'Migration',
        'start_date': date(2030, 1, 1), 'end_date': date(2030, 1, 31),
        'required_skills': [], 'members': [{'user_id': dev.id, 'allocation_percentage': 10}],
    }
    with pytest.raises(ValidationError):
        projects.create_project(data, lead)

    data['required_skills'] = [{'subskill_id': taxonomy_data.flask.id, 'required_rating': 'medium'}]
    data['members'] = []
    with pytest.raises(ValidationError):
        projects.create_project(data, lead)


def test_member_months_must_fall_inside_project(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    with pytest.raises(ValidationError):
        make_project(lead, [{'user_id': dev.id, 'allocations': [
            {'month': '2030-05', 'allocation_percentage': 20}]}])
    db.session.rollback()


def test_find_matching_employees_ranks_by_match_then_capacity(make_user, make_project, taxonomy_data,
                                                              give_rating):
    manager = make_user('Mona Manager', role='management')
    expert = make_user('Eve Expert')
    busy = make_user('Bob Busy')
    free = make_user('Fay Free', role='tech_lead')
    give_rating(expert, taxonomy_data.flask, 'high')
    give_rating(busy, taxonomy_data.flask, 'low')
    make_project(manager, [{'user_id': busy.id, 'allocation_percentage': 50}], status='active')

    matches = projects.find_matching_employees(
        [{'subskill_id': taxonomy_data.flask.id, 'required_rating': 'medium'}], ['2030-01'])

    assert [m['user_id'] for m in matches] == [expert.id, free.id, busy.id]
    assert matches[0]['match_percentage'] == 100
    assert matches[0]['skill_details'][0]['user_rating'] == 'high'
    assert matches[1]['skill_details'][0]['user_rating'] == 'none'
    assert matches[2]['available_capacity'] == 50
    assert manager.id not in [m['user_id'] for m in matches]


def test_visibility_follows_role(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    outsider = make_user('Olga Other')
    manager = make_user('Mona Manager', role='management')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 30}])

    assert projects.get_project(project.id, dev) is project
    assert projects.get_project(project.id, manager) is project
    assert projects.get_all_projects(outsider) == []
    with pytest.raises(PermissionDenied):
        projects.get_project(project.id, outsider)


def test_approval_notifies_owners(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    manager = make_user('Mona Manager', role='management')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 30}])

    with pytest.raises(PermissionDenied):
        projects.update_project_status(project.id, 'active', lead)
    with pytest.raises(ValidationError):
        projects.update_project_status(project.id, 'completed', manager)

    projects.update_project_status(project.id, 'active', manager)
    db.session.commit()

    assert project.status == 'active'
    assert project.approved_by == manager.id
    assert Notification.query.filter_by(user_id=lead.id, title='Project approved').count() == 1

    projects.update_project_status(project.id, 'completed', manager)
    assert project.status == 'completed'


def test_rejecting_a_new_project_requires_reason(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    manager = make_user('Mona Manager', role='management')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 30}])

    with pytest.raises(ValidationError):
        projects.update_project_status(project.id, 'rejected', manager, '  ')

    projects.update_project_status(project.id, 'rejected', manager, 'No budget')
    assert project.status == 'rejected'
    assert project.rejection_reason == 'No budget'


def test_editing_active_project_goes_back_for_approval(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    manager = make_user('Mona Manager', role='management')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 30}], status='active')

    changed = projects.update_project(project, {'name': 'Apollo II'}, lead)
    db.session.commit()

    assert changed == ['name']
    assert project.status == 'awaiting_approval'
    assert project.pending_changes['name'] == 'Apollo'
    assert projects.describe_pending_changes(project) == [
        {'label': 'Project Name', 'old_value': 'Apollo', 'new_value': 'Apollo II'}]

    projects.update_project_status(project.id, 'rejected', manager, 'Keep the name')
    db.session.commit()

    assert project.name == 'Apollo'
    assert project.status == 'active'
    assert project.pending_changes is None


def test_rejecting_a_date_edit_restores_plan_and_drops_new_months(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    newcomer = make_user('Nia New')
    manager = make_user('Mona Manager', role='management')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 30}], status='active')

    projects.update_project(project, {'end_date': date(2030, 6, 30),
                                      'month_wise_manpower': [{'month': '2030-05', 'limit': 1}]}, lead)
    projects.set_member_allocation(project, newcomer.id, '2030-05', 80, lead)
    db.session.commit()
    assert capacity.get_user_total_allocation(newcomer.id, '2030-05') == 80

    projects.update_project_status(project.id, 'rejected', manager, 'Stay within Q1')
    db.session.commit()

    assert project.status == 'active'
    assert project.end_date == date(2030, 3, 31)
    assert project.month_wise_manpower == [{'month': '2030-01', 'limit': 0},
                                           {'month': '2030-02', 'limit': 0},
                                           {'month': '2030-03', 'limit': 0}]
    months = sorted({a.month for a in ProjectAssignment.query.filter_by(project_id=project.id)})
    assert months == ['2030-01', '2030-02', '2030-03']
    assert capacity.get_user_total_allocation(newcomer.id, '2030-05') == 0
    assert [m['user_id'] for m in projects.project_to_dict(project)['members']] == [dev.id]
    dropped = AllocationHistory.query.filter_by(project_id=project.id, user_id=newcomer.id,
                                                change_reason='Outside project dates').one()
    assert (dropped.month, dropped.previous_allocation, dropped.new_allocation) == ('2030-05', 80, 0)


def test_manager_edits_apply_directly(make_user, make_project):
    manager = make_user('Mona Manager', role='management')
    dev = make_user('Dan Dev')
    project = make_project(manager, [{'user_id': dev.id, 'allocation_percentage': 30}], status='active')

    projects.update_project(project, {'customer_name': 'Globex'}, manager)

    assert project.status == 'active'
    assert project.pending_changes is None


def test_shrinking_dates_drops_outside_allocations(make_user, make_project):
    manager = make_user('Mona Manager', role='management')
    dev = make_user('Dan Dev')
    project = make_project(manager, [{'user_id': dev.id, 'allocation_percentage': 30}], status='active')

    changed = projects.update_project(project, {'end_date': date(2030, 1, 31)}, manager)
    db.session.commit()

    assert 'end_date' in changed
    assert [a.month for a in ProjectAssignment.query.filter_by(project_id=project.id)] == ['2030-01']
    assert [m['month'] for m in project.month_wise_manpower] == ['2030-01']
    removed = AllocationHistory.query.filter_by(project_id=project.id, new_allocation=0,
                                                change_reason='Outside project dates').count()
    assert removed == 2


def test_outsiders_cannot_edit(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 30}])

    with pytest.raises(PermissionDenied):
        projects.update_project(project, {'name': 'Mine now'}, dev)


def test_member_allocation_changes_are_recorded(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    newcomer = make_user('Nia New')
    project = make_project(lead, [{'user_id': dev.id, 'allocation_percentage': 30}])

    projects.set_member_allocation(project, dev.id, '2030-02', 60, lead)
    projects.set_member_allocation(project, newcomer.id, '2030-03', 25, lead)
    projects.set_member_allocation(project, dev.id, '2030-03', 0, lead)
    db.session.commit()

    kinds = [entry['kind'] for entry in projects.get_allocation_history(project.id)]
    assert kinds[:3] == ['member_removed', 'new_member', 'increase']
    assert ProjectAssignment.query.filter_by(project_id=project.id, user_id=dev.id).count() == 2

    with pytest.raises(ValidationError):
        projects.set_member_allocation(project, dev.id, '2030-06', 10, lead)

    assert projects.remove_member(project, newcomer.id, lead) == 1
    db.session.commit()
    only_newcomer = projects.get_allocation_history(project.id, newcomer.id)
    assert [entry['kind'] for entry in only_newcomer] == ['member_removed', 'new_member']


@pytest.mark.parametrize('previous, new, kind', [
    (None, 50, 'new_member'),
    (0, 0, 'project_update'),
    (40, 0, 'member_removed'),
    (40, 60, 'increase'),
    (60, 40, 'decrease'),
    (40, 40, 'project_update'),
])
def test_classify_history_entry(previous, new, kind):
    assert projects.classify_history_entry(previous, new) == kind


def test_member_views_and_manpower(make_user, make_project):
    lead = make_user('Lena Lead', role='tech_lead')
    dev = make_user('Dan Dev')
    part_timer = make_user('Pat Part')
    project = make_project(lead, [
        {'user_id': dev.id, 'allocation_percentage': 50},
        {'user_id': part_timer.id, 'allocations': [{'month': '2030-01', 'allocation_percentage': 25}]},
    ])
    project.month_wise_manpower = [{'month': '2030-01', 'limit': 0.5},
                                   {'month': '2030-02', 'limit': 1}]
    db.session.commit()

    data = projects.project_to_dict(project)
    by_user = projects.members_by_user(data)
    assert [m['user_id'] for m in by_user] == [dev.id, part_timer.id]
    assert by_user[0]['month_count'] == 3

    by_month = projects.members_by_month(data)
    assert by_month[0]['month'] == '2030-01'
    assert len(by_month[0]['members']) == 2

    utilisation = projects.manpower_utilisation(project)
    assert utilisation[0] == {'month': '2030-01', 'limit': 0.5, 'allocated_fte': 0.75,
                              'remaining': -0.25, 'over_limit': True}
    assert utilisation[1]['over_limit'] is False
