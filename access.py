"""Role-aware access guard.

Routes are protected in two layers: ``login_required`` makes sure someone is
signed in, then ``roles_required`` or ``page_access_required`` checks what the
signed-in role may do. Page access comes from the PageAccess table and falls
back to ``DEFAULT_PAGE_ACCESS`` for roles that have no rows yet.
"""

from functools import wraps

from flask import g, jsonify, session

from database import db
from models import Employee, PageAccess

PAGES = ('/dashboard', '/skills', '/approvals', '/skill-explorer', '/projects', '/reports', '/admin')

# Always reachable once signed in
UTILITY_ROUTES = ('/profile', '/notifications')

DEFAULT_PAGE_ACCESS = {
    'admin': PAGES,
    'management': ('/dashboard', '/skills', '/approvals', '/skill-explorer', '/projects', '/reports'),
    'tech_lead': ('/dashboard', '/skills', '/skill-explorer', '/projects'),
    'employee': ('/dashboard', '/skills', '/projects'),
}


def landing_route(role):
    """Where a role lands from '/' or after being refused a page."""
    return '/dashboard' if role == 'admin' else '/skills'


def get_access_map(role):
    """Return {route: bool} for every known page."""
    rows = PageAccess.query.filter_by(role=role).all()
    if not rows:
        allowed = DEFAULT_PAGE_ACCESS.get(role, ())
        return {page: page in allowed for page in PAGES}

    access_map = {page: False for page in PAGES}
    for row in rows:
        access_map[row.route] = row.has_access
    return access_map


def _page_for(route):
    for page in PAGES + UTILITY_ROUTES:
        if route == page or route.startswith(page + '/'):
            return page
    return route


def has_access(role, route):
    page = _page_for(route)
    if page in UTILITY_ROUTES:
        return True
    return get_access_map(role).get(page, False)


def set_page_access(role, route, allowed):
    """Create or update one override row. Seeds the role from the defaults first
    so a single override does not revoke every other page."""
    if not PageAccess.query.filter_by(role=role).first():
        for page, default_allowed in get_access_map(role).items():
            db.session.add(PageAccess(role=role, route=page, has_access=default_allowed))
        db.session.flush()

    row = PageAccess.query.filter_by(role=role, route=route).first()
    if row is None:
        row = PageAccess(role=role, route=route)
        db.session.add(row)
    row.has_access = allowed
    return row


def current_user():
    """The signed-in Employee, cached on ``g`` for the request."""
    employee_id = session.get('employee_id')
    if not employee_id:
        return None
    user = g.get('current_user')
    if user is None or user.id != employee_id:
        user = g.current_user = db.session.get(Employee, employee_id)
    return user


def _deny(message, status, redirect_to=None):
    payload = {'success': False, 'error': message}
    if redirect_to:
        payload['redirect'] = redirect_to
    return jsonify(payload), status


# Security decorators for route protection
def login_required(f):
    """Restrict a route to signed-in, active users."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_user()
        if user is None or not user.is_active:
            session.clear()
            return _deny('Please log in first.', 401, '/auth')
        return f(*args, **kwargs)
    return decorated_function


def roles_required(*roles):
    """Restrict a route to the given roles. Implies login_required."""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            user = current_user()
            if user.role not in roles:
                return _deny('You do not have permission to perform this action.', 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def page_access_required(route):
    """Restrict a route to roles whose access map allows the page."""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            user = current_user()
            if not has_access(user.role, route):
                return _deny('Access denied.', 403, landing_route(user.role))
            return f(*args, **kwargs)
        return decorated_function
    return decorator


admin_required = roles_required('admin')
