# Flask SkillStaff Application
# Employees self-rate skills, managers approve ratings, and project leads
# staff projects against required skill levels and monthly capacity.
# Version: 1.0

# Standard library imports
from datetime import datetime

# Third-party imports
from flask import Flask, request, jsonify, session, Response
from sqlalchemy import inspect, desc
from werkzeug.exceptions import HTTPException
from flask_wtf.csrf import CSRFProtect, generate_csrf
from flask_migrate import Migrate
import click

# Local application imports
from config import config
from database import db, init_db
from models import (
    AuditLog,
    Employee,
    EmployeeRating,
    MANAGER_ROLES,
    PageAccess,
    PROJECT_CREATOR_ROLES,
    PROJECT_STATUSES,
    ROLES,
    Skill,
    SkillCategory,
    Subskill,
)
from forms import (
    AllocationForm,
    CategoryForm,
    EmployeeForm,
    EmployeeUpdateForm,
    ProfileForm,
    ProjectForm,
    ProjectStatusForm,
    ProjectUpdateForm,
    ReviewForm,
    SkillForm,
)
from access import (
    DEFAULT_PAGE_ACCESS,
    PAGES,
    admin_required,
    current_user,
    get_access_map,
    landing_route,
    login_required,
    page_access_required,
    roles_required,
    set_page_access,
)
from activity import list_notifications, log_audit, mark_all_read, mark_read
from errors import PermissionDenied, ValidationError
import capacity
import projects
import ratings
import reports
import taxonomy

# Initialize Flask application
app = Flask(__name__)
app.config.from_object(config)
app.logger.setLevel(app.config['LOG_LEVEL'])
init_db(app)
migrate = Migrate(app, db)
# JSON clients send the token from /api/csrf-token in the X-CSRFToken header
csrf = CSRFProtect(app)

#------------------------------------------------------------------------------
# Response helpers
#------------------------------------------------------------------------------

def _error(message, status=400):
    return jsonify({'success': False, 'error': message}), status


def _form_error(form):
    """First validation error of a form as a JSON error response."""
    messages = []
    for field, errors in form.errors.items():
        label = getattr(form, field).label.text if hasattr(form, field) else field
        for error in errors:
            messages.append(f"{label}: {error}")
    return jsonify({'success': False, 'error': messages[0] if messages else 'Invalid data.',
                    'errors': form.errors}), 400


def _failure(e, message):
    """Roll back and turn an exception raised inside a route into a JSON error."""
    db.session.rollback()
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, (ValidationError, PermissionDenied)):
        return _error(str(e), e.status_code)
    app.logger.error(f"{message}: {str(e)}", exc_info=True)
    return _error(f'{message}. Please try again.', 500)


def _payload():
    """JSON body if there is one, otherwise the posted form."""
    return request.get_json(silent=True) or request.form.to_dict()


def _int_list(values):
    try:
        return [int(value) for value in values or []]
    except (TypeError, ValueError):
        raise ValidationError('Expected a list of numeric ids.')


def _parse_date(value, label):
    try:
        return datetime.strptime(value or '', '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f"{label} must be a YYYY-MM-DD date.")


def _csv_response(text, prefix):
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    return Response(
        text,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment;filename={prefix}_{timestamp}.csv"}
    )


@app.errorhandler(404)
def not_found(e):
    return _error('Not found.', 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return _error('Method not allowed.', 405)


@app.errorhandler(400)
def bad_request(e):
    return _error(getattr(e, 'description', None) or 'Bad request.', 400)

#------------------------------------------------------------------------------
# CLI Commands for Database Management
#------------------------------------------------------------------------------

@app.cli.command("db-status")
def db_status_command():
    """Show database status and list existing tables."""
    try:
        existing_tables = inspect(db.engine).get_table_names()
        if not existing_tables:
            click.echo('No tables exist in the database.')
            return

        click.echo('Existing tables:')
        for table in existing_tables:
            click.echo(f'  - {table}')
        click.echo(f'Employees: {Employee.query.count()}, categories: {SkillCategory.query.count()}, '
                   f'pending ratings: {EmployeeRating.query.filter_by(status="submitted").count()}')
    except Exception as e:
        click.echo(f'Error checking database status: {str(e)}', err=True)

@app.cli.command("init-db")
def init_db_command():
    """Create any missing tables."""
    try:
        existing_tables = inspect(db.engine).get_table_names()
        missing_tables = [table for table in db.Model.metadata.tables.values()
                          if table.name not in existing_tables]
        if not missing_tables:
            click.echo('All tables already exist.')
            return

        click.echo('Creating missing tables:')
        for table in missing_tables:
            click.echo(f'  - {table.name}')
        db.Model.metadata.create_all(bind=db.engine, tables=missing_tables)
        click.echo('Missing tables created successfully.')
    except Exception as e:
        click.echo(f'Error initializing database: {str(e)}', err=True)

@app.cli.command("drop-db")
@click.confirmation_option(prompt='Are you sure you want to drop all tables? This will delete all data!')
def drop_db_command():
    """Drop all database tables after confirmation."""
    try:
        if not inspect(db.engine).get_table_names():
            click.echo('No tables to drop.')
            return
        db.drop_all()
        click.echo('All tables dropped successfully.')
    except Exception as e:
        click.echo(f'Error dropping tables: {str(e)}', err=True)

@app.cli.command("init-data")
def init_data_command():
    """Seed the page access table with the default role map."""
    try:
        created = 0
        for role in ROLES:
            if PageAccess.query.filter_by(role=role).first():
                click.echo(f'Page access for {role} already exists, skipping...')
                continue
            allowed = DEFAULT_PAGE_ACCESS.get(role, ())
            for page in PAGES:
                db.session.add(PageAccess(role=role, route=page, has_access=page in allowed))
                created += 1
        db.session.commit()
        click.echo(f'Created {created} page access entries')
    except Exception as e:
        db.session.rollback()
        click.echo(f'Error initializing data: {str(e)}', err=True)

@app.cli.command("create-admin")
@click.argument('email')
@click.argument('name')
@click.argument('password')
def create_admin_command(email, name, password):
    """Create an administrator. Required for initial system setup."""
    try:
        if Employee.query.filter_by(email=email).first():
            click.echo('A user with that email already exists.')
            return

        admin = Employee(email=email, full_name=name, role='admin', status='active', job_title='Administrator')
        admin.set_password(password)
        db.session.add(admin)
        db.session.flush()
        log_audit(action="Admin Created (CLI)", target_type="Employee", target_id=admin.id,
                  details={'email': email, 'name': name})
        db.session.commit()
        click.echo('Admin user created successfully.')
    except Exception as e:
        db.session.rollback()
        click.echo(f'Error creating admin user: {str(e)}', err=True)

#------------------------------------------------------------------------------
# Authentication and Authorization
#------------------------------------------------------------------------------

@app.route('/api/auth/login', methods=['POST'])
def login():
    """Sign in with email and password."""
    data = _payload()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    remember = bool(data.get('remember'))

    employee = Employee.query.filter_by(email=email).first()
    if employee and employee.check_password(password):
        if not employee.is_active:
            log_audit(action="Login Refused (Inactive)", user_id=employee.id, user_email=employee.email)
            db.session.commit()
            return _error('Your account is inactive. Please contact an administrator.', 403)

        session.clear()
        session.permanent = remember
        session['employee_id'] = employee.id
        session['role'] = employee.role
        log_audit(action="Login Success", user_id=employee.id, user_email=employee.email)
        db.session.commit()
        return jsonify({'success': True, 'user': employee.to_dict(), 'redirect': landing_route(employee.role)})

    log_audit(action="Login Failed", details={'email': email})
    db.session.commit()
    return _error('Invalid credentials.', 401)

@app.route('/api/auth/logout', methods=['POST'])
def logout():
    """Clear the session."""
    user_id = session.get('employee_id')
    if user_id:
        log_audit(action="User Logout", user_id=user_id)
        db.session.commit()
    session.clear()
    return jsonify({'success': True, 'redirect': '/auth'})

@app.route('/api/auth/me')
@login_required
def me():
    user = current_user()
    return jsonify({
        'success': True,
        'user': user.to_dict(),
        'access': get_access_map(user.role),
        'landing': landing_route(user.role),
        'is_manager': user.is_manager,
    })

@app.route('/api/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})

@app.route('/')
@login_required
def index():
    """Send admins to the dashboard and everyone else to their skills."""
    return jsonify({'redirect': landing_route(current_user().role)})

#------------------------------------------------------------------------------
# Profile and notifications (always accessible once signed in)
#------------------------------------------------------------------------------

@app.route('/api/profile', methods=['GET', 'POST'])
@login_required
def profile():
    """View or edit the signed-in user's profile."""
    user = current_user()
    if request.method == 'GET':
        data = user.to_dict()
        data.update({'phone_number': user.phone_number, 'about_me': user.about_me})
        return jsonify({'success': True, 'profile': data})

    original = {'full_name': user.full_name, 'email': user.email,
                'phone_number': user.phone_number or '', 'about_me': user.about_me or ''}
    form = ProfileForm()
    if not form.validate_on_submit():
        return _form_error(form)

    try:
        if form.email.data != user.email:
            existing_user = Employee.query.filter(Employee.email == form.email.data, Employee.id != user.id).first()
            if existing_user:
                return _error('That email address is already in use. Please choose a different one.')

        user.full_name = form.full_name.data.strip()
        user.email = form.email.data
        user.phone_number = form.phone_number.data or None
        user.about_me = form.about_me.data or None

        updated = {'full_name': user.full_name, 'email': user.email,
                   'phone_number': user.phone_number or '', 'about_me': user.about_me or ''}
        profile_changes = {key: {'old': original[key], 'new': updated[key]}
                           for key in original if original[key] != updated[key]}
        if profile_changes:
            log_audit(action="Profile Updated", target_type="Employee", target_id=user.id, details=profile_changes)
        db.session.commit()
        return jsonify({'success': True, 'profile': user.to_dict()})
    except Exception as e:
        return _failure(e, f'Error updating profile for user {user.id}')

@app.route('/api/notifications')
@login_required
def notifications():
    unread_only = request.args.get('unread', type=int) == 1
    items = list_notifications(current_user().id, unread_only=unread_only)
    return jsonify({'success': True, 'notifications': [n.to_dict() for n in items],
                    'unread_count': sum(1 for n in items if not n.is_read)})

@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def notification_read(notification_id):
    try:
        mark_read(current_user().id, notification_id)
        db.session.commit()
        return jsonify({'success': True})
    except Exception as e:
        return _failure(e, 'Error updating notification')

@app.route('/api/notifications/read-all', methods=['POST'])
@login_required
def notifications_read_all():
    try:
        updated = mark_all_read(current_user().id)
        db.session.commit()
        return jsonify({'success': True, 'updated': updated})
    except Exception as e:
        return _failure(e, 'Error updating notifications')

#------------------------------------------------------------------------------
# Dashboard
#------------------------------------------------------------------------------

@app.route('/api/dashboard')
@page_access_required('/dashboard')
def dashboard():
    return jsonify({'success': True, 'summary': reports.dashboard_summary(current_user())})

#------------------------------------------------------------------------------
# Skills: taxonomy
#------------------------------------------------------------------------------

@app.route('/api/skills/categories')
@page_access_required('/skills')
def skill_categories():
    """Categories on the user's skills page, with their rating progress."""
    user = current_user()
    visible = set(taxonomy.visible_category_ids(user))
    items = []
    for category in taxonomy.list_categories(request.args.get('search', '').strip()):
        if category.id not in visible:
            continue
        item = category.to_dict()
        item['skill_count'] = len(category.skills)
        item['progress'] = ratings.category_progress(category.id, user.id)
        items.append(item)
    return jsonify({'success': True, 'categories': items,
                    'total_categories': SkillCategory.query.count()})

@app.route('/api/skills/hierarchy')
@page_access_required('/skills')
def skill_hierarchy():
    return jsonify({'success': True, 'categories': taxonomy.hierarchy()})

@app.route('/api/skills/categories', methods=['POST'])
@roles_required(*MANAGER_ROLES)
def add_category():
    form = CategoryForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        category = taxonomy.create_category(form.name.data, form.description.data, form.color.data)
        log_audit(action="Category Added", target_type="SkillCategory", target_id=category.id,
                  details={'name': category.name})
        db.session.commit()
        return jsonify({'success': True, 'category': category.to_dict()}), 201
    except Exception as e:
        return _failure(e, 'Error adding category')

@app.route('/api/skills/categories/<int:category_id>', methods=['PUT'])
@roles_required(*MANAGER_ROLES)
def edit_category(category_id):
    category = SkillCategory.query.get_or_404(category_id)
    form = CategoryForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        original_data = category.to_dict()
        taxonomy.update_category(category, form.name.data, form.description.data, form.color.data)
        changes = {key: {'old': original_data[key], 'new': value}
                   for key, value in category.to_dict().items() if original_data[key] != value}
        if changes:
            log_audit(action="Category Edited", target_type="SkillCategory", target_id=category.id, details=changes)
        db.session.commit()
        return jsonify({'success': True, 'category': category.to_dict()})
    except Exception as e:
        return _failure(e, 'Error editing category')

@app.route('/api/skills/categories/<int:category_id>', methods=['DELETE'])
@roles_required(*MANAGER_ROLES)
def delete_category(category_id):
    category = SkillCategory.query.get_or_404(category_id)
    try:
        summary = taxonomy.delete_category(category)
        log_audit(action="Category Deleted", target_type="SkillCategory", target_id=category_id, details=summary)
        db.session.commit()
        return jsonify({'success': True, 'deleted': summary})
    except Exception as e:
        return _failure(e, 'Error deleting category')

@app.route('/api/skills/categories/<int:category_id>/skills', methods=['POST'])
@roles_required(*MANAGER_ROLES)
def add_skill(category_id):
    form = SkillForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        skill = taxonomy.create_skill(category_id, form.name.data, form.description.data)
        log_audit(action="Skill Added", target_type="Skill", target_id=skill.id,
                  details={'name': skill.name, 'category_id': category_id})
        db.session.commit()
        return jsonify({'success': True, 'skill': skill.to_dict()}), 201
    except Exception as e:
        return _failure(e, 'Error adding skill')

@app.route('/api/skills/skills/<int:skill_id>', methods=['PUT'])
@roles_required(*MANAGER_ROLES)
def edit_skill(skill_id):
    skill = Skill.query.get_or_404(skill_id)
    form = SkillForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        original_name = skill.name
        taxonomy.update_skill(skill, form.name.data, form.description.data)
        log_audit(action="Skill Edited", target_type="Skill", target_id=skill.id,
                  details={'name': {'old': original_name, 'new': skill.name}})
        db.session.commit()
        return jsonify({'success': True, 'skill': skill.to_dict()})
    except Exception as e:
        return _failure(e, 'Error editing skill')

@app.route('/api/skills/skills/<int:skill_id>', methods=['DELETE'])
@roles_required(*MANAGER_ROLES)
def delete_skill(skill_id):
    skill = Skill.query.get_or_404(skill_id)
    try:
        skill_name = skill.name
        db.session.delete(skill)
        log_audit(action="Skill Deleted", target_type="Skill", target_id=skill_id, details={'name': skill_name})
        db.session.commit()
        return jsonify({'success': True})
    except Exception as e:
        return _failure(e, 'Error deleting skill')

@app.route('/api/skills/skills/<int:skill_id>/subskills', methods=['POST'])
@roles_required(*MANAGER_ROLES)
def add_subskill(skill_id):
    form = SkillForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        subskill = taxonomy.create_subskill(skill_id, form.name.data, form.description.data)
        log_audit(action="Subskill Added", target_type="Subskill", target_id=subskill.id,
                  details={'name': subskill.name, 'skill_id': skill_id})
        db.session.commit()
        return jsonify({'success': True, 'subskill': subskill.to_dict()}), 201
    except Exception as e:
        return _failure(e, 'Error adding subskill')

@app.route('/api/skills/subskills/<int:subskill_id>', methods=['PUT'])
@roles_required(*MANAGER_ROLES)
def edit_subskill(subskill_id):
    subskill = Subskill.query.get_or_404(subskill_id)
    form = SkillForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        original_name = subskill.name
        taxonomy.update_subskill(subskill, form.name.data, form.description.data)
        log_audit(action="Subskill Edited", target_type="Subskill", target_id=subskill.id,
                  details={'name': {'old': original_name, 'new': subskill.name}})
        db.session.commit()
        return jsonify({'success': True, 'subskill': subskill.to_dict()})
    except Exception as e:
        return _failure(e, 'Error editing subskill')

@app.route('/api/skills/subskills/<int:subskill_id>', methods=['DELETE'])
@roles_required(*MANAGER_ROLES)
def delete_subskill(subskill_id):
    subskill = Subskill.query.get_or_404(subskill_id)
    try:
        subskill_name = subskill.name
        db.session.delete(subskill)
        log_audit(action="Subskill Deleted", target_type="Subskill", target_id=subskill_id,
                  details={'name': subskill_name})
        db.session.commit()
        return jsonify({'success': True})
    except Exception as e:
        return _failure(e, 'Error deleting subskill')

#------------------------------------------------------------------------------
# Skills: category preferences
#------------------------------------------------------------------------------

@app.route('/api/skills/preferences')
@page_access_required('/skills')
def category_preferences():
    return jsonify({'success': True, 'visible_category_ids': taxonomy.visible_category_ids(current_user())})

@app.route('/api/skills/preferences', methods=['POST'])
@page_access_required('/skills')
def add_category_preferences():
    try:
        category_ids = _int_list(_payload().get('category_ids'))
        added = taxonomy.add_categories(current_user(), category_ids)
        db.session.commit()
        return jsonify({'success': True, 'added': added})
    except Exception as e:
        return _failure(e, 'Error adding categories')

@app.route('/api/skills/preferences/<int:category_id>', methods=['DELETE'])
@page_access_required('/skills')
def hide_category_preference(category_id):
    try:
        hidden = taxonomy.hide_category(current_user(), category_id)
        db.session.commit()
        return jsonify({'success': True, 'hidden': hidden})
    except Exception as e:
        return _failure(e, 'Error hiding category')

#------------------------------------------------------------------------------
# Skills: CSV import / export
#------------------------------------------------------------------------------

def _uploaded_csv_text():
    """CSV text from an uploaded 'file' or from a JSON 'csv' field."""
    if 'file' in request.files:
        file = request.files['file']
        if file.filename == '':
            raise ValidationError('No file selected')
        if not file.filename.lower().endswith('.csv'):
            raise ValidationError('Invalid file type. Please upload a .csv file')
        try:
            return file.read().decode('utf-8-sig')
        except UnicodeDecodeError:
            raise ValidationError('The CSV file must be UTF-8 encoded.')
    text = _payload().get('csv')
    if not text:
        raise ValidationError('No CSV data provided')
    return text

@app.route('/api/skills/export')
@roles_required(*MANAGER_ROLES)
def export_skills_csv():
    try:
        return _csv_response(taxonomy.export_hierarchy_csv(), 'skills_hierarchy_export')
    except Exception as e:
        return _failure(e, 'Error exporting skills')

@app.route('/api/skills/import/preview', methods=['POST'])
@roles_required(*MANAGER_ROLES)
def preview_skills_import():
    try:
        rows = taxonomy.parse_hierarchy_csv(_uploaded_csv_text())
        return jsonify({'success': True, **taxonomy.preview_rows(rows)})
    except Exception as e:
        return _failure(e, 'Error reading CSV')

@app.route('/api/skills/import', methods=['POST'])
@roles_required(*MANAGER_ROLES)
def import_skills():
    try:
        rows = taxonomy.parse_hierarchy_csv(_uploaded_csv_text())
        counts = taxonomy.import_hierarchy(rows)
        log_audit(action="Skills Imported", target_type="SkillCategory", details=counts)
        db.session.commit()
        return jsonify({'success': True, 'imported': counts})
    except Exception as e:
        return _failure(e, 'Failed to import data')

#------------------------------------------------------------------------------
# Skills: ratings
#------------------------------------------------------------------------------

@app.route('/api/skills/my-ratings')
@page_access_required('/skills')
def my_ratings():
    items = ratings.user_ratings(current_user().id)
    return jsonify({'success': True, 'ratings': [rating.to_dict() for rating in items]})

@app.route('/api/skills/ratings', methods=['POST'])
@page_access_required('/skills')
def save_ratings():
    """Submit a batch of self ratings for approval."""
    user = current_user()
    try:
        entries = _payload().get('ratings')
        if not isinstance(entries, list):
            raise ValidationError('Expected a list of ratings.')
        saved = ratings.save_ratings(user, entries)
        if saved:
            log_audit(action="Ratings Submitted", target_type="Employee", target_id=user.id,
                      details={'ratings': [{'skill_id': r.skill_id, 'subskill_id': r.subskill_id,
                                            'rating': r.rating} for r in saved]})
        db.session.commit()
        return jsonify({'success': True, 'saved': [rating.to_dict() for rating in saved]})
    except Exception as e:
        return _failure(e, 'Error saving ratings')

@app.route('/api/skills/categories/<int:category_id>/pending')
@page_access_required('/skills')
def category_pending_ratings(category_id):
    SkillCategory.query.get_or_404(category_id)
    items = ratings.pending_ratings(current_user().id, category_id)
    return jsonify({'success': True, 'ratings': [rating.to_dict() for rating in items]})

@app.route('/api/skills/categories/<int:category_id>/approved')
@page_access_required('/skills')
def category_approved_ratings(category_id):
    SkillCategory.query.get_or_404(category_id)
    try:
        items = ratings.approved_ratings(current_user().id, category_id, request.args.get('rating') or None)
        return jsonify({'success': True, 'ratings': [rating.to_dict() for rating in items]})
    except Exception as e:
        return _failure(e, 'Error loading approved ratings')

@app.route('/api/skills/categories/<int:category_id>/progress')
@page_access_required('/skills')
def category_progress(category_id):
    SkillCategory.query.get_or_404(category_id)
    return jsonify({'success': True, 'progress': ratings.category_progress(category_id, current_user().id)})

#------------------------------------------------------------------------------
# Approvals
#------------------------------------------------------------------------------

@app.route('/api/approvals')
@page_access_required('/approvals')
def approvals():
    return jsonify({'success': True, 'employees': ratings.grouped_pending_approvals(current_user())})

@app.route('/api/approvals/<int:rating_id>/approve', methods=['POST'])
@page_access_required('/approvals')
def approve_rating(rating_id):
    form = ReviewForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        rating = ratings.approve_rating(rating_id, current_user(), form.comment.data)
        log_audit(action="Rating Approved", target_type="EmployeeRating", target_id=rating.id,
                  details={'employee_id': rating.user_id, 'rating': rating.rating})
        db.session.commit()
        return jsonify({'success': True, 'rating': rating.to_dict()})
    except Exception as e:
        return _failure(e, 'Error approving rating')

@app.route('/api/approvals/<int:rating_id>/reject', methods=['POST'])
@page_access_required('/approvals')
def reject_rating(rating_id):
    form = ReviewForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        rating = ratings.reject_rating(rating_id, current_user(), form.comment.data)
        log_audit(action="Rating Rejected", target_type="EmployeeRating", target_id=rating.id,
                  details={'employee_id': rating.user_id, 'comment': rating.approver_comment})
        db.session.commit()
        return jsonify({'success': True, 'rating': rating.to_dict()})
    except Exception as e:
        return _failure(e, 'Error rejecting rating')

@app.route('/api/approvals/employee/<int:user_id>/approve-all', methods=['POST'])
@page_access_required('/approvals')
def approve_all_ratings(user_id):
    try:
        approved = ratings.bulk_approve(user_id, current_user())
        log_audit(action="Ratings Bulk Approved", target_type="Employee", target_id=user_id,
                  details={'count': len(approved)})
        db.session.commit()
        return jsonify({'success': True, 'approved': len(approved)})
    except Exception as e:
        return _failure(e, 'Error approving ratings')

#------------------------------------------------------------------------------
# Projects
#------------------------------------------------------------------------------

@app.route('/api/projects')
@page_access_required('/projects')
def list_projects():
    status = request.args.get('status') or None
    if status and status not in PROJECT_STATUSES:
        return _error(f'Unknown status "{status}".')
    try:
        items = projects.get_all_projects(current_user(), status)
        return jsonify({'success': True, 'projects': items})
    except Exception as e:
        return _failure(e, 'Failed to load projects')

@app.route('/api/projects', methods=['POST'])
@page_access_required('/projects')
@roles_required(*PROJECT_CREATOR_ROLES)
def create_project():
    """Create a project and send it for approval."""
    form = ProjectForm()
    if not form.validate_on_submit():
        return _form_error(form)
    user = current_user()
    try:
        data = _payload()
        project = projects.create_project({
            'name': form.name.data,
            'customer_name': form.customer_name.data,
            'description': form.description.data,
            'tech_lead_id': form.tech_lead_id.data,
            'start_date': form.start_date.data,
            'end_date': form.end_date.data,
            'required_skills': data.get('required_skills') or [],
            'members': data.get('members') or [],
            'month_wise_manpower': data.get('month_wise_manpower') or [],
        }, user)
        log_audit(action="Project Created", target_type="Project", target_id=project.id,
                  details={'name': project.name})
        db.session.commit()
        return jsonify({'success': True, 'project': projects.project_to_dict(project),
                        'message': 'Project created and sent for approval'}), 201
    except Exception as e:
        return _failure(e, 'Failed to create project')

@app.route('/api/projects/manpower-plan', methods=['POST'])
@page_access_required('/projects')
def manpower_plan():
    """Month-by-month manpower limits for a date range, keeping limits already entered."""
    try:
        data = _payload()
        start_date = _parse_date(data.get('start_date'), 'Start date')
        end_date = _parse_date(data.get('end_date'), 'End date')
        plan = capacity.build_manpower_plan(start_date, end_date, data.get('month_wise_manpower'))
        return jsonify({'success': True, 'month_wise_manpower': plan})
    except ValidationError as e:
        return _error(str(e))

@app.route('/api/projects/match', methods=['POST'])
@page_access_required('/projects')
@roles_required(*PROJECT_CREATOR_ROLES)
def match_employees():
    """Rank employees against required skills and capacity."""
    try:
        data = _payload()
        months = data.get('months')
        if not months and data.get('start_date') and data.get('end_date'):
            months = capacity.month_range(_parse_date(data['start_date'], 'Start date'),
                                          _parse_date(data['end_date'], 'End date'))
        matches = projects.find_matching_employees(data.get('required_skills') or [], months)
        return jsonify({'success': True, 'matches': matches})
    except Exception as e:
        return _failure(e, 'Error matching employees')

@app.route('/api/projects/<int:project_id>')
@page_access_required('/projects')
def project_detail(project_id):
    try:
        project = projects.get_project(project_id, current_user())
        data = projects.project_to_dict(project)
        data['members_by_user'] = projects.members_by_user(data)
        data['members_by_month'] = projects.members_by_month(data)
        data['manpower_utilisation'] = projects.manpower_utilisation(project)
        data['pending_change_list'] = projects.describe_pending_changes(project)
        user = current_user()
        data['can_approve'] = user.role in MANAGER_ROLES and project.status == 'awaiting_approval'
        return jsonify({'success': True, 'project': data})
    except Exception as e:
        return _failure(e, 'Failed to load project details')

@app.route('/api/projects/<int:project_id>', methods=['PUT'])
@page_access_required('/projects')
def update_project(project_id):
    user = current_user()
    form = ProjectUpdateForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        project = projects.get_project(project_id, user)
        data = _payload()
        changes = {field: getattr(form, field).data
                   for field in ('name', 'customer_name', 'description', 'tech_lead_id', 'start_date', 'end_date')
                   if field in data}
        if 'month_wise_manpower' in data:
            changes['month_wise_manpower'] = data['month_wise_manpower']
        if 'required_skills' in data:
            changes['required_skills'] = data['required_skills']
        changed = projects.update_project(project, changes, user)
        if changed:
            log_audit(action="Project Updated", target_type="Project", target_id=project.id,
                      details={'fields': changed, 'status': project.status})
        db.session.commit()
        return jsonify({'success': True, 'changed': changed, 'project': projects.project_to_dict(project)})
    except Exception as e:
        return _failure(e, 'Failed to update project')

@app.route('/api/projects/<int:project_id>/status', methods=['POST'])
@roles_required(*MANAGER_ROLES)
def project_status(project_id):
    """Approve, reject or complete a project."""
    form = ProjectStatusForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        project = projects.update_project_status(project_id, form.status.data, current_user(),
                                                 form.rejection_reason.data)
        log_audit(action=f"Project Status: {form.status.data}", target_type="Project", target_id=project.id,
                  details={'status': project.status, 'reason': form.rejection_reason.data or None})
        db.session.commit()
        return jsonify({'success': True, 'project': projects.project_to_dict(project)})
    except Exception as e:
        return _failure(e, 'Failed to update project status')

@app.route('/api/projects/<int:project_id>/history')
@page_access_required('/projects')
def project_history(project_id):
    """Allocation history; employees only see their own entries."""
    user = current_user()
    try:
        projects.get_project(project_id, user)
        only_user = user.id if user.role == 'employee' else None
        return jsonify({'success': True, 'history': projects.get_allocation_history(project_id, only_user)})
    except Exception as e:
        return _failure(e, 'Error loading history')

@app.route('/api/projects/<int:project_id>/members', methods=['POST'])
@page_access_required('/projects')
def set_project_member(project_id):
    """Add a member or change one month of their allocation."""
    form = AllocationForm()
    if not form.validate_on_submit():
        return _form_error(form)
    user = current_user()
    try:
        project = projects.get_project(project_id, user)
        projects.set_member_allocation(project, form.user_id.data, form.month.data,
                                       form.allocation_percentage.data, user, form.reason.data)
        log_audit(action="Project Allocation Changed", target_type="Project", target_id=project.id,
                  details={'user_id': form.user_id.data, 'month': form.month.data,
                           'allocation_percentage': form.allocation_percentage.data})
        db.session.commit()
        return jsonify({'success': True, 'project': projects.project_to_dict(project)})
    except Exception as e:
        return _failure(e, 'Failed to update allocation')

@app.route('/api/projects/<int:project_id>/members/<int:user_id>', methods=['DELETE'])
@page_access_required('/projects')
def remove_project_member(project_id, user_id):
    user = current_user()
    try:
        project = projects.get_project(project_id, user)
        removed = projects.remove_member(project, user_id, user)
        log_audit(action="Project Member Removed", target_type="Project", target_id=project.id,
                  details={'user_id': user_id, 'months_removed': removed})
        db.session.commit()
        return jsonify({'success': True, 'removed_months': removed})
    except Exception as e:
        return _failure(e, 'Failed to remove member')

@app.route('/api/capacity/<int:user_id>')
@login_required
def user_capacity(user_id):
    """Allocated and available capacity for a user (current month or ?months=YYYY-MM,...)."""
    user = current_user()
    if user.id != user_id and user.role not in PROJECT_CREATOR_ROLES:
        return _error('You do not have permission to view this capacity.', 403)
    Employee.query.get_or_404(user_id)
    try:
        months = [m for m in request.args.get('months', '').split(',') if m.strip()]
        months = [capacity.parse_month(m.strip()) for m in months]
        return jsonify({'success': True, 'user_id': user_id, **capacity.get_user_capacity(user_id, months)})
    except Exception as e:
        return _failure(e, 'Error loading capacity')

#------------------------------------------------------------------------------
# Skill explorer and reports
#------------------------------------------------------------------------------

def _explorer_filters():
    return (request.args.get('search', '').strip(),
            request.args.get('subskill_id', type=int),
            request.args.get('min_rating') or None)

@app.route('/api/explorer')
@page_access_required('/skill-explorer')
def skill_explorer():
    try:
        return jsonify({'success': True, 'employees': reports.search_employees(*_explorer_filters())})
    except Exception as e:
        return _failure(e, 'Error searching employees')

@app.route('/api/explorer/export')
@page_access_required('/skill-explorer')
def export_explorer_csv():
    """Exports the filtered employee list to a CSV file."""
    try:
        return _csv_response(reports.export_employees_csv(*_explorer_filters()), 'employee_list')
    except Exception as e:
        return _failure(e, 'An error occurred while generating the CSV export')

@app.route('/api/reports/coverage')
@page_access_required('/reports')
def coverage_report():
    return jsonify({'success': True, 'coverage': reports.skill_coverage()})

#------------------------------------------------------------------------------
# Administration
#------------------------------------------------------------------------------

@app.route('/api/admin/users')
@page_access_required('/admin')
def admin_users():
    query = Employee.query
    search = request.args.get('search', '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(db.or_(Employee.full_name.ilike(pattern), Employee.email.ilike(pattern)))
    users = query.order_by(Employee.full_name).all()
    return jsonify({'success': True, 'users': [user.to_dict() for user in users]})

@app.route('/api/admin/users', methods=['POST'])
@admin_required
def admin_add_user():
    """Create a user with a password and role."""
    form = EmployeeForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        if Employee.query.filter_by(email=form.email.data).first():
            return _error('Email already exists.')
        employee = Employee(full_name=form.full_name.data.strip(), email=form.email.data,
                            role=form.role.data, job_title=form.job_title.data or None, status='active')
        employee.set_password(form.password.data)
        db.session.add(employee)
        db.session.flush()
        log_audit(action="User Added", target_type="Employee", target_id=employee.id,
                  details={'email': employee.email, 'role': employee.role})
        db.session.commit()
        return jsonify({'success': True, 'user': employee.to_dict()}), 201
    except Exception as e:
        return _failure(e, 'Error adding user')

@app.route('/api/admin/users/<int:employee_id>', methods=['PATCH'])
@admin_required
def admin_update_user(employee_id):
    """Change a user's role, status or job title."""
    employee = Employee.query.get_or_404(employee_id)
    form = EmployeeUpdateForm()
    if not form.validate_on_submit():
        return _form_error(form)
    try:
        if employee.id == current_user().id and (
                (form.role.data and form.role.data != employee.role) or form.status.data == 'inactive'):
            return _error('You cannot change your own role or deactivate yourself.')

        requested = {field: getattr(form, field).data for field in ('role', 'status')
                     if getattr(form, field).data}
        # An empty job title clears it; only a missing key leaves it alone
        if 'job_title' in _payload():
            requested['job_title'] = (form.job_title.data or '').strip() or None

        changes = {}
        for field, value in requested.items():
            if value != getattr(employee, field):
                changes[field] = {'old': getattr(employee, field), 'new': value}
                setattr(employee, field, value)
        if changes:
            log_audit(action="User Updated", target_type="Employee", target_id=employee.id, details=changes)
        db.session.commit()
        return jsonify({'success': True, 'user': employee.to_dict()})
    except Exception as e:
        return _failure(e, 'Error updating user')

@app.route('/api/admin/page-access', methods=['GET', 'PUT'])
@admin_required
def admin_page_access():
    if request.method == 'GET':
        return jsonify({'success': True, 'access': {role: get_access_map(role) for role in ROLES}})
    try:
        data = _payload()
        role, route = data.get('role'), data.get('route')
        if role not in ROLES or route not in PAGES:
            raise ValidationError('Unknown role or page.')
        if role == 'admin' and route == '/admin' and not data.get('has_access'):
            raise ValidationError('Admins cannot lose access to the admin page.')
        set_page_access(role, route, bool(data.get('has_access')))
        log_audit(action="Page Access Changed", target_type="PageAccess",
                  details={'role': role, 'route': route, 'has_access': bool(data.get('has_access'))})
        db.session.commit()
        return jsonify({'success': True, 'access': get_access_map(role)})
    except Exception as e:
        return _failure(e, 'Error updating page access')

@app.route('/api/admin/audit-log')
@admin_required
def admin_audit_log():
    """Audit log entries with pagination."""
    page = request.args.get('page', 1, type=int)
    per_page = app.config['AUDIT_LOG_PER_PAGE']

    pagination = AuditLog.query.order_by(desc(AuditLog.timestamp), desc(AuditLog.id)) \
        .paginate(page=page, per_page=per_page, error_out=False)
    return jsonify({
        'success': True,
        'logs': [log.to_dict() for log in pagination.items],
        'page': pagination.page,
        'pages': pagination.pages,
        'total': pagination.total,
    })

#------------------------------------------------------------------------------
# Application Entry Point
#------------------------------------------------------------------------------

if __name__ == '__main__':
    app.run(debug=True)
