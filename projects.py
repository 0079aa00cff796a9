"""Project staffing: creation, approval, member allocations and matching.

Allocations are stored per employee, project and month. Every change to an
allocation is written to AllocationHistory so the project timeline can be
replayed.
"""

from collections import defaultdict
from datetime import datetime

from flask import current_app
from sqlalchemy.orm import joinedload

import capacity
from activity import notify
from database import db
from errors import PermissionDenied, ValidationError
from models import (
    AllocationHistory,
    Employee,
    EmployeeRating,
    MANAGER_ROLES,
    Project,
    ProjectAssignment,
    ProjectRequiredSkill,
    RATING_LEVELS,
    RATING_VALUES,
    STAFFABLE_ROLES,
    Subskill,
)

INITIAL_ASSIGNMENT_REASON = 'Initial project assignment'

# Fields snapshotted while an edit of an active project awaits approval
_TRACKED_FIELDS = ('name', 'customer_name', 'description', 'tech_lead_id',
                   'start_date', 'end_date', 'month_wise_manpower')

_FIELD_LABELS = {
    'name': 'Project Name',
    'customer_name': 'Customer Name',
    'description': 'Description',
    'tech_lead_id': 'Project Owner',
    'start_date': 'Start Date',
    'end_date': 'End Date',
}

#------------------------------------------------------------------------------
# Serialization
#------------------------------------------------------------------------------

def _iso(value):
    return value.isoformat() if value else None


def _members(project):
    """Aggregate the project's monthly assignments per member."""
    by_user = defaultdict(list)
    for assignment in project.assignments:
        by_user[assignment.user_id].append(assignment)

    this_month = capacity.current_month()
    members = []
    for user_id, assignments in by_user.items():
        employee = assignments[0].employee
        monthly = sorted(({'month': a.month, 'allocation_percentage': a.allocation_percentage}
                          for a in assignments), key=lambda item: item['month'])
        current = next((a.allocation_percentage for a in assignments if a.month == this_month), 0.0)
        total = capacity.get_user_total_allocation(user_id, this_month)
        members.append({
            'user_id': user_id,
            'full_name': employee.full_name,
            'email': employee.email,
            'role': employee.role,
            'allocation_percentage': current,
            'monthly_allocations': monthly,
            'current_total_allocation': total,
            'available_capacity': max(0.0, capacity.FULL_CAPACITY - total),
        })
    return sorted(members, key=lambda member: member['full_name'])


def project_to_dict(project):
    return {
        'id': project.id,
        'name': project.name,
        'description': project.description,
        'customer_name': project.customer_name,
        'tech_lead_id': project.tech_lead_id,
        'tech_lead_name': project.tech_lead.full_name if project.tech_lead else None,
        'start_date': _iso(project.start_date),
        'end_date': _iso(project.end_date),
        'status': project.status,
        'created_by': project.created_by,
        'approved_by': project.approved_by,
        'approved_at': _iso(project.approved_at),
        'rejected_by': project.rejected_by,
        'rejected_at': _iso(project.rejected_at),
        'rejection_reason': project.rejection_reason,
        'month_wise_manpower': project.month_wise_manpower or [],
        'pending_changes': project.pending_changes,
        'created_at': _iso(project.created_at),
        'members': _members(project),
        'required_skills': [required.to_dict() for required in project.required_skills],
    }

#------------------------------------------------------------------------------
# Queries
#------------------------------------------------------------------------------

def _visible_projects_query(viewer):
    query = Project.query.options(
        joinedload(Project.tech_lead),
        joinedload(Project.assignments).joinedload(ProjectAssignment.employee),
        joinedload(Project.required_skills).joinedload(ProjectRequiredSkill.skill),
        joinedload(Project.required_skills).joinedload(ProjectRequiredSkill.subskill),
    )
    if viewer is None or viewer.role in MANAGER_ROLES:
        return query

    assigned = db.session.query(ProjectAssignment.project_id).filter(ProjectAssignment.user_id == viewer.id)
    if viewer.role == 'tech_lead':
        return query.filter(db.or_(Project.tech_lead_id == viewer.id,
                                   Project.created_by == viewer.id,
                                   Project.id.in_(assigned)))
    return query.filter(Project.id.in_(assigned))


def get_all_projects(viewer=None, status=None):
    """Projects visible to the viewer, newest first, with members and required skills."""
    query = _visible_projects_query(viewer)
    if status:
        query = query.filter(Project.status == status)
    projects = query.order_by(Project.created_at.desc(), Project.id.desc()).all()
    return [project_to_dict(project) for project in projects]


def get_project(project_id, viewer=None):
    project = Project.query.get_or_404(project_id)
    if viewer is not None and not _visible_projects_query(viewer).filter(Project.id == project.id).first():
        raise PermissionDenied('You do not have access to this project.')
    return project


def _normalize_required_skills(entries):
    """Resolve required skills to subskills and validate the required level."""
    normalized = []
    seen = set()
    for entry in entries or []:
        subskill = db.session.get(Subskill, entry.get('subskill_id'))
        if subskill is None:
            raise ValidationError(f'Unknown subskill {entry.get("subskill_id")}.')
        level = entry.get('required_rating')
        if level not in RATING_LEVELS:
            raise ValidationError(f'Invalid required rating "{level}" for {subskill.name}.')
        if subskill.id in seen:
            raise ValidationError(f'{subskill.name} is listed more than once.')
        seen.add(subskill.id)
        normalized.append({
            'skill_id': subskill.skill_id,
            'skill_name': subskill.skill.name,
            'subskill_id': subskill.id,
            'subskill_name': subskill.name,
            'required_rating': level,
        })
    return normalized


def find_matching_employees(required_skills, months=None):
    """
    Rank active employees and tech leads against the required subskills.

    A requirement is met when the employee's approved rating is at least the
    required level; a missing rating counts as 0. Results are ordered by match
    percentage, then by available capacity (busiest month of ``months`` when
    given, otherwise the current month).
    """
    required = _normalize_required_skills(required_skills)
    months = [capacity.month_key(month) for month in months] if months else [capacity.current_month()]

    profiles = Employee.query.filter(Employee.status == 'active',
                                     Employee.role.in_(STAFFABLE_ROLES)) \
        .order_by(Employee.full_name).all()
    if not profiles:
        return []

    approved = {}
    subskill_ids = [req['subskill_id'] for req in required]
    if subskill_ids:
        rows = EmployeeRating.query.filter(EmployeeRating.status == 'approved',
                                           EmployeeRating.subskill_id.in_(subskill_ids),
                                           EmployeeRating.user_id.in_([p.id for p in profiles])).all()
        approved = {(row.user_id, row.subskill_id): row.rating for row in rows}

    matches = []
    for profile in profiles:
        totals = capacity.allocations_by_month(profile.id, months)
        current_total = max(totals.values())

        matched = 0
        details = []
        for req in required:
            user_rating = approved.get((profile.id, req['subskill_id']))
            meets = RATING_VALUES.get(user_rating, 0) >= RATING_VALUES[req['required_rating']]
            if meets:
                matched += 1
            details.append({
                'skill_name': req['skill_name'],
                'subskill_name': req['subskill_name'],
                'user_rating': user_rating or 'none',
                'required_rating': req['required_rating'],
                'matches': meets,
            })

        matches.append({
            'user_id': profile.id,
            'full_name': profile.full_name,
            'email': profile.email,
            'role': profile.role,
            'available_capacity': max(0.0, capacity.FULL_CAPACITY - current_total),
            'current_total_allocation': current_total,
            'matched_skills': matched,
            'total_required_skills': len(required),
            'match_percentage': round(matched / len(required) * 100) if required else 0,
            'skill_details': details,
        })

    matches.sort(key=lambda m: (-m['match_percentage'], -m['available_capacity']))
    return matches

#------------------------------------------------------------------------------
# Creating and editing
#------------------------------------------------------------------------------

def _can_manage(project, user):
    return user.role in MANAGER_ROLES or user.id in (project.tech_lead_id, project.created_by)


def _active_employee(user_id):
    employee = db.session.get(Employee, user_id)
    if employee is None or not employee.is_active:
        raise ValidationError(f'Employee {user_id} is not an active user.')
    return employee


def _record_history(project, user_id, month, previous, new, actor, reason):
    entry = AllocationHistory(project_id=project.id, user_id=user_id, month=month,
                              previous_allocation=previous, new_allocation=new,
                              changed_by=actor.id, change_reason=reason)
    db.session.add(entry)
    return entry


def _member_allocations(member, project_months):
    """Expand a member payload into {month: percentage}.

    A member either lists 'allocations' per month or gives one
    'allocation_percentage' applied to every month of the project.
    """
    if member.get('allocations'):
        allocations = {}
        for item in member['allocations']:
            month = capacity.parse_month(item.get('month'))
            if month in allocations:
                raise ValidationError(f'Month {month} is listed twice for employee {member.get("user_id")}.')
            allocations[month] = item.get('allocation_percentage')
    else:
        allocations = {month: member.get('allocation_percentage') for month in project_months}

    outside = sorted(set(allocations) - set(project_months))
    if outside:
        raise ValidationError(f'Months outside the project dates: {", ".join(outside)}.')
    return allocations


def _validate_dates(start_date, end_date):
    if not start_date:
        raise ValidationError('Start date is required.')
    if not end_date:
        raise ValidationError('End date is required.')
    if end_date < start_date:
        raise ValidationError('End date cannot be before the start date.')


def create_project(data, creator):
    """
    Create a project awaiting approval, with its required skills, monthly
    member allocations and their initial history entries. Returns the project.
    """
    for field, label in (('name', 'Project name'), ('customer_name', 'Customer name'),
                         ('description', 'Description')):
        if not (data.get(field) or '').strip():
            raise ValidationError(f'{label} is required.')
    _validate_dates(data.get('start_date'), data.get('end_date'))

    required = _normalize_required_skills(data.get('required_skills'))
    if not required:
        raise ValidationError('Please add at least one required skill.')
    members = data.get('members') or []
    if not members:
        raise ValidationError('Please assign at least one team member.')

    tech_lead_id = data.get('tech_lead_id') or creator.id
    _active_employee(tech_lead_id)

    project = Project(
        name=data['name'].strip(),
        description=data['description'].strip(),
        customer_name=data['customer_name'].strip(),
        tech_lead_id=tech_lead_id,
        start_date=data['start_date'],
        end_date=data['end_date'],
        created_by=creator.id,
        status='awaiting_approval',
        month_wise_manpower=capacity.build_manpower_plan(data['start_date'], data['end_date'],
                                                         data.get('month_wise_manpower')),
    )
    db.session.add(project)
    db.session.flush()

    for req in required:
        db.session.add(ProjectRequiredSkill(project_id=project.id, skill_id=req['skill_id'],
                                            subskill_id=req['subskill_id'],
                                            required_rating=req['required_rating']))

    project_months = capacity.month_range(project.start_date, project.end_date)
    seen_members = set()
    for member in members:
        user_id = member.get('user_id')
        if user_id in seen_members:
            raise ValidationError(f'Employee {user_id} is assigned twice.')
        seen_members.add(user_id)
        _active_employee(user_id)

        for month, percentage in sorted(_member_allocations(member, project_months).items()):
            percentage = capacity.check_allocation(user_id, month, percentage, exclude_project_id=project.id)
            db.session.add(ProjectAssignment(project_id=project.id, user_id=user_id, month=month,
                                             allocation_percentage=percentage, assigned_by=creator.id))
            _record_history(project, user_id, month, None, percentage, creator, INITIAL_ASSIGNMENT_REASON)

    db.session.flush()
    current_app.logger.info('Project %s created by %s with %d members', project.id, creator.email, len(members))
    return project


def _snapshot(project):
    return {
        'name': project.name,
        'customer_name': project.customer_name,
        'description': project.description,
        'tech_lead_id': project.tech_lead_id,
        'tech_lead_name': project.tech_lead.full_name if project.tech_lead else None,
        'start_date': _iso(project.start_date),
        'end_date': _iso(project.end_date),
        'month_wise_manpower': project.month_wise_manpower or [],
    }


def _drop_outside_allocations(project, actor):
    """Remove allocations for months no longer covered by the project's dates."""
    project_months = set(capacity.month_range(project.start_date, project.end_date))
    outside = ProjectAssignment.query.filter(ProjectAssignment.project_id == project.id,
                                             ProjectAssignment.month.notin_(sorted(project_months))).all()
    for assignment in outside:
        _record_history(project, assignment.user_id, assignment.month,
                        assignment.allocation_percentage, 0, actor, 'Outside project dates')
        db.session.delete(assignment)
    db.session.flush()
    db.session.expire(project, ['assignments'])
    return len(outside)


def update_project(project, changes, editor):
    """
    Edit project details. Returns the labels of the fields that changed.

    Edits of an active project by someone who cannot approve it send the
    project back for approval; the previous values are kept in
    ``pending_changes`` until a manager decides.
    """
    if not _can_manage(project, editor):
        raise PermissionDenied('Only the project owner or a manager can edit this project.')
    if project.status in ('rejected', 'completed'):
        raise ValidationError(f'A {project.status} project cannot be edited.')

    before = _snapshot(project)

    for field in ('name', 'customer_name', 'description'):
        if field in changes and changes[field] is not None:
            value = changes[field].strip()
            if not value:
                raise ValidationError(f'{_FIELD_LABELS[field]} cannot be empty.')
            setattr(project, field, value)

    if changes.get('tech_lead_id'):
        project.tech_lead_id = _active_employee(changes['tech_lead_id']).id

    start_date = changes.get('start_date') or project.start_date
    end_date = changes.get('end_date') or project.end_date
    _validate_dates(start_date, end_date)
    project.start_date, project.end_date = start_date, end_date
    project.month_wise_manpower = capacity.build_manpower_plan(
        start_date, end_date, changes.get('month_wise_manpower', project.month_wise_manpower))

    _drop_outside_allocations(project, editor)

    if changes.get('required_skills') is not None:
        required = _normalize_required_skills(changes['required_skills'])
        if not required:
            raise ValidationError('Please add at least one required skill.')
        project.required_skills = [
            ProjectRequiredSkill(skill_id=req['skill_id'], subskill_id=req['subskill_id'],
                                 required_rating=req['required_rating'])
            for req in required
        ]

    db.session.flush()
    db.session.expire(project, ['tech_lead'])
    after = _snapshot(project)
    changed = [field for field in _TRACKED_FIELDS if before[field] != after[field]]
    if changes.get('required_skills') is not None:
        changed.append('required_skills')
    if not changed:
        return []

    if project.status == 'active' and editor.role not in MANAGER_ROLES:
        # Keep the oldest approved values if an earlier edit is still pending
        if not project.pending_changes:
            project.pending_changes = before
        project.status = 'awaiting_approval'

    _record_history(project, editor.id, None, 0, 0, editor,
                    'Project details updated: ' + ', '.join(changed))
    return changed


def describe_pending_changes(project):
    """List {label, old_value, new_value} for every field changed by a pending edit."""
    pending = project.pending_changes
    if not pending:
        return []

    current = _snapshot(project)
    changes = []
    for field in ('name', 'customer_name', 'description', 'start_date', 'end_date'):
        if field in pending and pending[field] != current[field]:
            changes.append({'label': _FIELD_LABELS[field],
                            'old_value': pending[field] or 'Not set',
                            'new_value': current[field] or 'Not set'})

    if 'tech_lead_id' in pending and pending['tech_lead_id'] != current['tech_lead_id']:
        changes.append({'label': _FIELD_LABELS['tech_lead_id'],
                        'old_value': pending.get('tech_lead_name') or 'Not assigned',
                        'new_value': current['tech_lead_name'] or 'Unknown'})

    old_manpower = {entry['month']: entry['limit'] for entry in pending.get('month_wise_manpower') or []}
    new_manpower = {entry['month']: entry['limit'] for entry in current['month_wise_manpower']}
    for month in sorted(set(old_manpower) | set(new_manpower)):
        if old_manpower.get(month) != new_manpower.get(month):
            changes.append({'label': f'Manpower ({month})',
                            'old_value': 'Not set' if month not in old_manpower else str(old_manpower[month]),
                            'new_value': 'Not set' if month not in new_manpower else str(new_manpower[month])})
    return changes


def _notify_owners(project, title, message):
    for user_id in {project.created_by, project.tech_lead_id} - {None}:
        notify(user_id, title, message, link='/projects')


def update_project_status(project_id, status, actor, rejection_reason=None):
    """Approve, reject or complete a project. Management and admin only."""
    if actor.role not in MANAGER_ROLES:
        raise PermissionDenied('Only management can change the project status.')
    project = Project.query.get_or_404(project_id)
    now = datetime.utcnow()

    if status == 'completed':
        if project.status != 'active':
            raise ValidationError('Only active projects can be completed.')
        project.status = 'completed'
        return project

    if project.status != 'awaiting_approval':
        raise ValidationError(f'Project is {project.status.replace("_", " ")}, not awaiting approval.')

    if status == 'active':
        project.status = 'active'
        project.approved_by = actor.id
        project.approved_at = now
        project.pending_changes = None
        project.rejection_reason = None
        _notify_owners(project, 'Project approved', f'"{project.name}" was approved by {actor.full_name}.')
    elif status == 'rejected':
        reason = (rejection_reason or '').strip()
        if not reason:
            raise ValidationError('Please provide a rejection reason')
        project.rejected_by = actor.id
        project.rejected_at = now
        project.rejection_reason = reason
        if project.pending_changes:
            # Rejecting an edit restores the last approved details
            previous = project.pending_changes
            project.name = previous['name']
            project.customer_name = previous['customer_name']
            project.description = previous['description']
            project.tech_lead_id = previous['tech_lead_id']
            project.start_date = datetime.strptime(previous['start_date'], '%Y-%m-%d').date()
            project.end_date = datetime.strptime(previous['end_date'], '%Y-%m-%d').date() \
                if previous['end_date'] else None
            project.month_wise_manpower = previous['month_wise_manpower']
            project.pending_changes = None
            project.status = 'active'
            _drop_outside_allocations(project, actor)
            _notify_owners(project, 'Project changes rejected',
                           f'Changes to "{project.name}" were rejected: {reason}')
        else:
            project.status = 'rejected'
            _notify_owners(project, 'Project rejected', f'"{project.name}" was rejected: {reason}')
    else:
        raise ValidationError(f'Invalid status "{status}".')
    return project

#------------------------------------------------------------------------------
# Members
#------------------------------------------------------------------------------

def _check_staffing_allowed(project, actor):
    if not _can_manage(project, actor):
        raise PermissionDenied('Only the project owner or a manager can change the team.')
    if project.status in ('rejected', 'completed'):
        raise ValidationError(f'The team of a {project.status} project cannot be changed.')


def set_member_allocation(project, user_id, month, percentage, actor, reason=None):
    """Set one member's allocation for one month; 0 removes that month."""
    _check_staffing_allowed(project, actor)
    _active_employee(user_id)
    month = capacity.parse_month(month)
    if month not in capacity.month_range(project.start_date, project.end_date):
        raise ValidationError(f'{month} is outside the project dates.')

    assignment = ProjectAssignment.query.filter_by(project_id=project.id, user_id=user_id, month=month).first()
    previous = assignment.allocation_percentage if assignment else None

    try:
        percentage = float(percentage)
    except (TypeError, ValueError):
        raise ValidationError('Allocation percentage must be a number.')

    if percentage == 0:
        if assignment is None:
            return None
        db.session.delete(assignment)
        _record_history(project, user_id, month, previous, 0, actor, reason or 'Allocation removed')
        return None

    percentage = capacity.check_allocation(user_id, month, percentage, exclude_project_id=project.id)
    if previous == percentage:
        return assignment

    if assignment is None:
        assignment = ProjectAssignment(project_id=project.id, user_id=user_id, month=month,
                                       assigned_by=actor.id, allocation_percentage=percentage)
        db.session.add(assignment)
    else:
        assignment.allocation_percentage = percentage
    _record_history(project, user_id, month, previous, percentage, actor,
                    reason or ('Member added' if previous is None else 'Allocation changed'))
    return assignment


def remove_member(project, user_id, actor, reason=None):
    """Remove every monthly allocation of a member. Returns the number removed."""
    _check_staffing_allowed(project, actor)
    assignments = ProjectAssignment.query.filter_by(project_id=project.id, user_id=user_id).all()
    if not assignments:
        raise ValidationError('This employee is not a member of the project.')
    for assignment in assignments:
        _record_history(project, user_id, assignment.month, assignment.allocation_percentage, 0,
                        actor, reason or 'Member removed')
        db.session.delete(assignment)
    return len(assignments)


def classify_history_entry(previous, new):
    """Entries without an allocation change (0 -> 0) record project detail edits."""
    if previous is None:
        return 'new_member'
    if previous > 0 and new == 0:
        return 'member_removed'
    if new > previous:
        return 'increase'
    if new < previous:
        return 'decrease'
    return 'project_update'


def get_allocation_history(project_id, user_id=None):
    """Allocation changes of a project, newest first; optionally for one member."""
    query = AllocationHistory.query.options(joinedload(AllocationHistory.member),
                                            joinedload(AllocationHistory.changed_by_user)) \
        .filter(AllocationHistory.project_id == project_id)
    if user_id is not None:
        query = query.filter(AllocationHistory.user_id == user_id)
    entries = query.order_by(AllocationHistory.created_at.desc(), AllocationHistory.id.desc()).all()

    return [{
        'id': entry.id,
        'project_id': entry.project_id,
        'user_id': entry.user_id,
        'full_name': entry.member.full_name if entry.member else 'Unknown',
        'month': entry.month,
        'previous_allocation': entry.previous_allocation,
        'new_allocation': entry.new_allocation,
        'changed_by': entry.changed_by,
        'changed_by_name': entry.changed_by_user.full_name if entry.changed_by_user else 'Unknown',
        'change_reason': entry.change_reason,
        'kind': classify_history_entry(entry.previous_allocation, entry.new_allocation),
        'created_at': _iso(entry.created_at),
    } for entry in entries]


def members_by_user(project_data):
    """Members with their active months, most-months first."""
    members = []
    for member in project_data['members']:
        active = [alloc for alloc in member['monthly_allocations'] if alloc['allocation_percentage'] > 0]
        members.append(dict(member, month_count=len(active), active_allocations=active))
    return sorted(members, key=lambda member: member['month_count'], reverse=True)


def members_by_month(project_data):
    """Members grouped under each month they are allocated in, months ascending."""
    months = {}
    for member in project_data['members']:
        for alloc in member['monthly_allocations']:
            if alloc['allocation_percentage'] <= 0:
                continue
            months.setdefault(alloc['month'], []).append({
                'user_id': member['user_id'],
                'full_name': member['full_name'],
                'role': member['role'],
                'allocation_percentage': alloc['allocation_percentage'],
            })
    return [{'month': month, 'members': months[month]} for month in sorted(months)]


def manpower_utilisation(project):
    """Allocated full-time equivalents against the monthly manpower limit."""
    allocated = defaultdict(float)
    for assignment in project.assignments:
        allocated[assignment.month] += assignment.allocation_percentage / capacity.FULL_CAPACITY

    result = []
    for entry in project.month_wise_manpower or []:
        fte = round(allocated.get(entry['month'], 0.0), 2)
        limit = entry['limit']
        result.append({
            'month': entry['month'],
            'limit': limit,
            'allocated_fte': fte,
            'remaining': round(limit - fte, 2),
            'over_limit': bool(limit) and fte > limit,
        })
    return result
