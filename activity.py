"""Audit trail and in-app notification helpers.

Both helpers only add rows to the session; the caller commits.
"""

from flask import has_request_context, session

from database import db
from models import AuditLog, Employee, Notification


def log_audit(action, target_type=None, target_id=None, details=None, user_id=None, user_email=None):
    """Add an audit trail entry for the signed-in user (or the given one)."""
    if user_id is None and has_request_context():
        user_id = session.get('employee_id')
    if user_id and not user_email:
        user = db.session.get(Employee, user_id)
        if user:
            user_email = user.email

    log_entry = AuditLog(
        user_id=user_id,
        user_email=user_email,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details
    )
    db.session.add(log_entry)
    return log_entry


def notify(user_id, title, message=None, link=None):
    notification = Notification(user_id=user_id, title=title, message=message, link=link)
    db.session.add(notification)
    return notification


def list_notifications(user_id, unread_only=False):
    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(is_read=False)
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


def mark_read(user_id, notification_id):
    notification = Notification.query.filter_by(id=notification_id, user_id=user_id).first_or_404()
    notification.is_read = True
    return notification


def mark_all_read(user_id):
    return Notification.query.filter_by(user_id=user_id, is_read=False).update({'is_read': True})
