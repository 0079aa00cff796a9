"""Employee self ratings and their manager approval workflow."""

from datetime import datetime

from sqlalchemy.orm import joinedload

from activity import notify
from database import db
from errors import PermissionDenied, ValidationError
from models import Employee, EmployeeRating, RATING_LEVELS, Skill, Subskill


def _validate_level(level):
    if level not in RATING_LEVELS:
        raise ValidationError(f'Invalid rating "{level}". Expected one of: {", ".join(RATING_LEVELS)}.')
    return level


def user_ratings(user_id, statuses=None):
    query = EmployeeRating.query.options(joinedload(EmployeeRating.skill), joinedload(EmployeeRating.subskill)) \
        .filter(EmployeeRating.user_id == user_id)
    if statuses:
        query = query.filter(EmployeeRating.status.in_(statuses))
    return query.order_by(EmployeeRating.submitted_at.desc()).all()


def save_ratings(user, entries):
    """
    Submit a batch of self ratings for approval.

    Each entry is a dict with skill_id, an optional subskill_id, rating and an
    optional self_comment. Skills that have subskills are rated through their
    subskills only. Re-submitting an unchanged approved rating is a no-op.
    Returns the ratings that were created or changed.
    """
    if not entries:
        raise ValidationError('No ratings to save.')

    saved = []
    now = datetime.utcnow()
    for entry in entries:
        level = _validate_level(entry.get('rating'))
        skill = db.session.get(Skill, entry.get('skill_id'))
        if skill is None:
            raise ValidationError(f'Unknown skill {entry.get("skill_id")}.')

        subskill_id = entry.get('subskill_id') or None
        if subskill_id is not None:
            subskill = db.session.get(Subskill, subskill_id)
            if subskill is None or subskill.skill_id != skill.id:
                raise ValidationError(f'Subskill {subskill_id} does not belong to {skill.name}.')
        elif skill.subskills:
            raise ValidationError(f'{skill.name} is rated through its subskills.')

        comment = (entry.get('self_comment') or '').strip() or None

        rating = EmployeeRating.query.filter_by(user_id=user.id, skill_id=skill.id,
                                                subskill_id=subskill_id).first()
        if rating is None:
            rating = EmployeeRating(user_id=user.id, skill_id=skill.id, subskill_id=subskill_id)
            db.session.add(rating)
        elif rating.status == 'approved' and rating.rating == level and \
                (comment is None or comment == rating.self_comment):
            continue

        rating.rating = level
        rating.status = 'submitted'
        rating.self_comment = comment
        rating.submitted_at = now
        rating.approved_by = None
        rating.approved_at = None
        rating.approver_comment = None
        saved.append(rating)

    db.session.flush()
    return saved


def _category_ratings(user_id, category_id, status):
    return EmployeeRating.query.join(Skill, EmployeeRating.skill_id == Skill.id) \
        .options(joinedload(EmployeeRating.skill), joinedload(EmployeeRating.subskill)) \
        .filter(EmployeeRating.user_id == user_id,
                EmployeeRating.status == status,
                Skill.category_id == category_id)


def pending_ratings(user_id, category_id):
    """Ratings the user submitted in a category that still await approval, newest first."""
    return _category_ratings(user_id, category_id, 'submitted') \
        .order_by(EmployeeRating.submitted_at.desc(), EmployeeRating.id.desc()).all()


def approved_ratings(user_id, category_id, level=None):
    query = _category_ratings(user_id, category_id, 'approved')
    if level:
        query = query.filter(EmployeeRating.rating == _validate_level(level))
    return query.order_by(EmployeeRating.approved_at.desc(), EmployeeRating.id.desc()).all()


def category_progress(category_id, user_id):
    """Rating progress of one user in one category.

    Rateable items are the subskills of the category's skills plus the skills
    that have no subskills. An item counts as rated once it has an approved
    or submitted rating.
    """
    skills = Skill.query.options(joinedload(Skill.subskills)) \
        .filter_by(category_id=category_id).all()
    items = set()
    for skill in skills:
        if skill.subskills:
            items.update((skill.id, subskill.id) for subskill in skill.subskills)
        else:
            items.add((skill.id, None))

    ratings = EmployeeRating.query.join(Skill, EmployeeRating.skill_id == Skill.id) \
        .filter(EmployeeRating.user_id == user_id,
                Skill.category_id == category_id,
                EmployeeRating.status.in_(('submitted', 'approved'))).all()

    rating_counts = {level: 0 for level in RATING_LEVELS}
    rated = approved = pending = 0
    for rating in ratings:
        if (rating.skill_id, rating.subskill_id) not in items:
            continue
        rated += 1
        if rating.status == 'approved':
            approved += 1
            rating_counts[rating.rating] += 1
        else:
            pending += 1

    total = len(items)
    return {
        'total_items': total,
        'rated_items': rated,
        'progress_percentage': round(rated / total * 100) if total else 0,
        'rating_counts': rating_counts,
        'approved_count': approved,
        'pending_count': pending,
    }

#------------------------------------------------------------------------------
# Approvals
#------------------------------------------------------------------------------

def grouped_pending_approvals(approver):
    """Submitted ratings grouped per employee, excluding the approver's own."""
    ratings = EmployeeRating.query.join(Employee, EmployeeRating.user_id == Employee.id) \
        .options(joinedload(EmployeeRating.skill).joinedload(Skill.category),
                 joinedload(EmployeeRating.subskill)) \
        .filter(EmployeeRating.status == 'submitted',
                EmployeeRating.user_id != approver.id,
                Employee.status == 'active') \
        .order_by(Employee.full_name, EmployeeRating.submitted_at.desc()).all()

    groups = {}
    for rating in ratings:
        group = groups.get(rating.user_id)
        if group is None:
            group = groups[rating.user_id] = {
                'user_id': rating.user_id,
                'employee_name': rating.employee.full_name,
                'email': rating.employee.email,
                'pending_count': 0,
                'ratings': [],
            }
        item = rating.to_dict()
        item['category_name'] = rating.skill.category.name
        group['ratings'].append(item)
        group['pending_count'] += 1
    return list(groups.values())


def _reviewable(rating_id, approver):
    rating = EmployeeRating.query.get_or_404(rating_id)
    if rating.user_id == approver.id:
        raise PermissionDenied('You cannot review your own ratings.')
    if rating.status != 'submitted':
        raise ValidationError(f'Rating is already {rating.status}.')
    return rating


def _label(rating):
    if rating.subskill:
        return f'{rating.skill.name} / {rating.subskill.name}'
    return rating.skill.name


def approve_rating(rating_id, approver, comment=None):
    rating = _reviewable(rating_id, approver)
    rating.status = 'approved'
    rating.approved_by = approver.id
    rating.approved_at = datetime.utcnow()
    rating.approver_comment = comment or None
    notify(rating.user_id, 'Skill rating approved',
           f'Your {rating.rating} rating for {_label(rating)} was approved by {approver.full_name}.',
           link='/skills')
    return rating


def reject_rating(rating_id, approver, comment=None):
    rating = _reviewable(rating_id, approver)
    rating.status = 'rejected'
    rating.approved_by = approver.id
    rating.approved_at = datetime.utcnow()
    rating.approver_comment = (comment or '').strip() or None
    message = f'Your {rating.rating} rating for {_label(rating)} was rejected by {approver.full_name}.'
    if rating.approver_comment:
        message += f' Comment: {rating.approver_comment}'
    notify(rating.user_id, 'Skill rating rejected', message, link='/skills')
    return rating


def bulk_approve(user_id, approver):
    """Approve every submitted rating of one employee."""
    if user_id == approver.id:
        raise PermissionDenied('You cannot review your own ratings.')
    ratings = EmployeeRating.query.filter_by(user_id=user_id, status='submitted').all()
    return [approve_rating(rating.id, approver) for rating in ratings]
