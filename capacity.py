"""Monthly capacity arithmetic.

An employee has 100% of their time per month. Allocations on every project
that is not rejected count against it.
"""

from datetime import datetime

from sqlalchemy import func

from database import db
from errors import CapacityExceededError, ValidationError
from models import Employee, Project, ProjectAssignment

FULL_CAPACITY = 100.0
MANPOWER_STEP = 0.25
EPSILON = 1e-6

# Projects in these states hold capacity
_COUNTED_STATUSES = ('awaiting_approval', 'active')


def month_key(value):
    """Return the 'YYYY-MM' key for a date (or pass a key through unchanged)."""
    if isinstance(value, str):
        return parse_month(value)
    return f'{value.year:04d}-{value.month:02d}'


def parse_month(value):
    try:
        parsed = datetime.strptime(value, '%Y-%m')
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid month "{value}". Please use YYYY-MM.')
    return f'{parsed.year:04d}-{parsed.month:02d}'


def current_month():
    return month_key(datetime.utcnow().date())


def month_range(start_date, end_date):
    """Inclusive list of month keys from start_date to end_date."""
    if not start_date or not end_date:
        return []
    year, month = start_date.year, start_date.month
    end = (end_date.year, end_date.month)
    months = []
    while (year, month) <= end:
        months.append(f'{year:04d}-{month:02d}')
        # Handles the December rollover
        year, month = year + month // 12, month % 12 + 1
    return months


def _round_to_step(value):
    return round(value / MANPOWER_STEP) * MANPOWER_STEP


def build_manpower_plan(start_date, end_date, existing=None):
    """One {'month', 'limit'} entry per month of the project, keeping limits
    already entered for months still in range."""
    existing_limits = {}
    for entry in existing or []:
        try:
            limit = float(entry.get('limit') or 0)
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid manpower limit for {entry.get("month")}.')
        if limit < 0:
            raise ValidationError('Manpower limits cannot be negative.')
        existing_limits[parse_month(entry.get('month'))] = _round_to_step(limit)

    return [{'month': month, 'limit': existing_limits.get(month, 0)}
            for month in month_range(start_date, end_date)]


def get_user_total_allocation(user_id, month=None, exclude_project_id=None):
    """Sum of the user's allocation percentages for a month (default: this month)."""
    month = month_key(month) if month else current_month()
    query = db.session.query(func.coalesce(func.sum(ProjectAssignment.allocation_percentage), 0.0)) \
        .join(Project, ProjectAssignment.project_id == Project.id) \
        .filter(ProjectAssignment.user_id == user_id,
                ProjectAssignment.month == month,
                Project.status.in_(_COUNTED_STATUSES))
    if exclude_project_id is not None:
        query = query.filter(ProjectAssignment.project_id != exclude_project_id)
    return float(query.scalar() or 0)


def get_user_available_capacity(user_id, month=None):
    return max(0.0, FULL_CAPACITY - get_user_total_allocation(user_id, month))


def get_user_capacity(user_id, months=None):
    """{'total', 'available'} for one month, or for the busiest of several."""
    if not months:
        total = get_user_total_allocation(user_id)
    else:
        total = max(allocations_by_month(user_id, months).values())
    return {'total': total, 'available': max(0.0, FULL_CAPACITY - total)}


def allocations_by_month(user_id, months):
    """{month: total} for the given months in a single query."""
    rows = db.session.query(ProjectAssignment.month, func.sum(ProjectAssignment.allocation_percentage)) \
        .join(Project, ProjectAssignment.project_id == Project.id) \
        .filter(ProjectAssignment.user_id == user_id,
                ProjectAssignment.month.in_(list(months)),
                Project.status.in_(_COUNTED_STATUSES)) \
        .group_by(ProjectAssignment.month).all()
    totals = {month: 0.0 for month in months}
    totals.update({month: float(total or 0) for month, total in rows})
    return totals


def validate_percentage(percentage):
    try:
        percentage = float(percentage)
    except (TypeError, ValueError):
        raise ValidationError('Allocation percentage must be a number.')
    if percentage <= 0 or percentage > FULL_CAPACITY:
        raise ValidationError('Allocation percentage must be greater than 0 and at most 100.')
    return percentage


def check_allocation(user_id, month, percentage, exclude_project_id=None):
    """Raise CapacityExceededError when the allocation would overbook the month."""
    percentage = validate_percentage(percentage)
    total = get_user_total_allocation(user_id, month, exclude_project_id=exclude_project_id)
    if total + percentage > FULL_CAPACITY + EPSILON:
        user = db.session.get(Employee, user_id)
        raise CapacityExceededError(user.full_name if user else f'User {user_id}',
                                    month_key(month), total, percentage)
    return percentage
