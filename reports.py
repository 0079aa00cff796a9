"""Skill explorer, coverage report and dashboard counters."""

import csv
import io

from sqlalchemy import func

import capacity
from database import db
from errors import ValidationError
from models import (
    Employee,
    EmployeeRating,
    MANAGER_ROLES,
    Project,
    ProjectAssignment,
    RATING_LEVELS,
    RATING_VALUES,
    Skill,
    SkillCategory,
    Subskill,
)


def _get_filtered_employees_query(search_query, subskill_id, min_rating):
    """Builds the base query for active employees with optional filtering."""
    query = Employee.query.filter(Employee.status == 'active')

    if search_query:
        search = f"%{search_query}%"
        query = query.filter(
            db.or_(
                Employee.full_name.ilike(search),
                Employee.job_title.ilike(search),
                Employee.email.ilike(search),
            )
        )

    if subskill_id:
        levels = RATING_LEVELS
        if min_rating:
            if min_rating not in RATING_VALUES:
                raise ValidationError(f'Invalid rating "{min_rating}".')
            levels = [level for level in RATING_LEVELS if RATING_VALUES[level] >= RATING_VALUES[min_rating]]
        rated = db.session.query(EmployeeRating.user_id).filter(
            EmployeeRating.subskill_id == subskill_id,
            EmployeeRating.status == 'approved',
            EmployeeRating.rating.in_(levels),
        )
        query = query.filter(Employee.id.in_(rated))

    return query


def search_employees(search_query='', subskill_id=None, min_rating=None):
    """Employees matching the explorer filters, with their approved ratings."""
    employees = _get_filtered_employees_query(search_query, subskill_id, min_rating) \
        .order_by(Employee.full_name).all()
    if not employees:
        return []

    ratings = EmployeeRating.query.filter(EmployeeRating.status == 'approved',
                                          EmployeeRating.user_id.in_([e.id for e in employees])).all()
    by_user = {}
    for rating in ratings:
        by_user.setdefault(rating.user_id, []).append(rating.to_dict())

    this_month = capacity.current_month()
    results = []
    for employee in employees:
        item = employee.to_dict()
        item['approved_ratings'] = by_user.get(employee.id, [])
        item['current_total_allocation'] = capacity.get_user_total_allocation(employee.id, this_month)
        item['available_capacity'] = max(0.0, capacity.FULL_CAPACITY - item['current_total_allocation'])
        results.append(item)
    return results


def export_employees_csv(search_query='', subskill_id=None, min_rating=None):
    """Exports the filtered employee list to CSV text."""
    employees = search_employees(search_query, subskill_id, min_rating)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['Name', 'Email', 'Role', 'Job Title', 'Approved Ratings',
                     'High', 'Medium', 'Low', 'Allocated This Month', 'Available This Month'])
    for employee in employees:
        counts = {level: 0 for level in RATING_LEVELS}
        for rating in employee['approved_ratings']:
            counts[rating['rating']] += 1
        writer.writerow([
            employee['full_name'],
            employee['email'],
            employee['role'],
            employee['job_title'] or '',
            len(employee['approved_ratings']),
            counts['high'],
            counts['medium'],
            counts['low'],
            f"{employee['current_total_allocation']:g}",
            f"{employee['available_capacity']:g}",
        ])
    return output.getvalue()


def skill_coverage():
    """Approved rating counts per subskill and level, grouped by category and skill."""
    rows = db.session.query(EmployeeRating.subskill_id, EmployeeRating.rating, func.count(EmployeeRating.id)) \
        .join(Employee, EmployeeRating.user_id == Employee.id) \
        .filter(EmployeeRating.status == 'approved',
                EmployeeRating.subskill_id.isnot(None),
                Employee.status == 'active') \
        .group_by(EmployeeRating.subskill_id, EmployeeRating.rating).all()
    counts = {}
    for subskill_id, level, count in rows:
        counts.setdefault(subskill_id, {lvl: 0 for lvl in RATING_LEVELS})[level] = count

    subskills = db.session.query(Subskill, Skill, SkillCategory) \
        .join(Skill, Subskill.skill_id == Skill.id) \
        .join(SkillCategory, Skill.category_id == SkillCategory.id) \
        .order_by(SkillCategory.name, Skill.name, Subskill.name).all()

    coverage = []
    for subskill, skill, category in subskills:
        levels = counts.get(subskill.id, {lvl: 0 for lvl in RATING_LEVELS})
        coverage.append({
            'category_name': category.name,
            'skill_name': skill.name,
            'subskill_id': subskill.id,
            'subskill_name': subskill.name,
            'counts': levels,
            'total': sum(levels.values()),
        })
    return coverage


def dashboard_summary(user):
    """Counters shown on the dashboard; managers get organisation-wide numbers."""
    this_month = capacity.current_month()
    summary = {
        'my_pending_ratings': EmployeeRating.query.filter_by(user_id=user.id, status='submitted').count(),
        'my_approved_ratings': EmployeeRating.query.filter_by(user_id=user.id, status='approved').count(),
        'my_allocation_this_month': capacity.get_user_total_allocation(user.id, this_month),
        'my_projects': db.session.query(ProjectAssignment.project_id)
                                 .filter(ProjectAssignment.user_id == user.id).distinct().count(),
    }
    if user.role in MANAGER_ROLES:
        summary.update({
            'ratings_awaiting_approval': EmployeeRating.query.filter(EmployeeRating.status == 'submitted',
                                                                     EmployeeRating.user_id != user.id).count(),
            'projects_awaiting_approval': Project.query.filter_by(status='awaiting_approval').count(),
            'active_projects': Project.query.filter_by(status='active').count(),
            'active_employees': Employee.query.filter_by(status='active').count(),
        })
    return summary
