# Database models for the SkillStaff application.
# Every table the application reads or writes is declared here.

from datetime import datetime

from werkzeug.security import generate_password_hash, check_password_hash
from sqlalchemy.types import JSON

from database import db

#------------------------------------------------------------------------------
# Enumerations
#------------------------------------------------------------------------------

ROLES = ('employee', 'tech_lead', 'management', 'admin')
MANAGER_ROLES = ('management', 'admin')
PROJECT_CREATOR_ROLES = ('tech_lead', 'management', 'admin')
STAFFABLE_ROLES = ('employee', 'tech_lead')

EMPLOYEE_STATUSES = ('active', 'inactive')

RATING_LEVELS = ('low', 'medium', 'high')
RATING_VALUES = {'low': 1, 'medium': 2, 'high': 3}

PROJECT_STATUSES = ('awaiting_approval', 'active', 'rejected', 'completed')


def _iso(value):
    return value.isoformat() if value else None

#------------------------------------------------------------------------------
# People
#------------------------------------------------------------------------------

class Employee(db.Model):
    """
    A user profile. Every person who can sign in is an Employee; the role
    decides what they may see and change.
    """
    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    job_title = db.Column(db.String(100), nullable=True)
    phone_number = db.Column(db.String(20), nullable=True)
    about_me = db.Column(db.Text, nullable=True)

    # Authentication and Authorization
    password_hash = db.Column(db.String(256))
    role = db.Column(db.String(20), nullable=False, default='employee', index=True)
    status = db.Column(db.String(20), nullable=False, default='active', index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    ratings = db.relationship('EmployeeRating', backref='employee', lazy=True,
                              foreign_keys='EmployeeRating.user_id',
                              cascade='all, delete-orphan')
    assignments = db.relationship('ProjectAssignment', backref='employee', lazy=True,
                                  foreign_keys='ProjectAssignment.user_id')

    def set_password(self, password):
        """Hash and set the user's password"""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Verify the user's password against stored hash"""
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_manager(self):
        return self.role in MANAGER_ROLES

    @property
    def is_active(self):
        return self.status == 'active'

    def to_dict(self):
        return {
            'user_id': self.id,
            'full_name': self.full_name,
            'email': self.email,
            'role': self.role,
            'status': self.status,
            'job_title': self.job_title,
        }

#------------------------------------------------------------------------------
# Skill taxonomy
#------------------------------------------------------------------------------

class SkillCategory(db.Model):
    """Top level of the skill taxonomy."""
    __tablename__ = 'skill_category'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.Text)
    color = db.Column(db.String(20), nullable=False, default='#3B82F6')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    skills = db.relationship('Skill', backref='category', lazy=True,
                             cascade='all, delete-orphan', order_by='Skill.name')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'color': self.color,
        }


class Skill(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey('skill_category.id', ondelete='CASCADE'),
                            nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    subskills = db.relationship('Subskill', backref='skill', lazy=True,
                                cascade='all, delete-orphan', order_by='Subskill.name')
    ratings = db.relationship('EmployeeRating', backref='skill', lazy=True,
                              cascade='all, delete-orphan')
    required_by = db.relationship('ProjectRequiredSkill', backref='skill', lazy=True,
                                  cascade='all, delete-orphan')

    __table_args__ = (db.UniqueConstraint('name', 'category_id', name='uq_skill_name_category'),)

    def to_dict(self):
        return {
            'id': self.id,
            'category_id': self.category_id,
            'name': self.name,
            'description': self.description,
        }


class Subskill(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    skill_id = db.Column(db.Integer, db.ForeignKey('skill.id', ondelete='CASCADE'),
                         nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    ratings = db.relationship('EmployeeRating', backref='subskill', lazy=True,
                              cascade='all, delete-orphan')
    required_by = db.relationship('ProjectRequiredSkill', backref='subskill', lazy=True,
                                  cascade='all, delete-orphan')

    __table_args__ = (db.UniqueConstraint('name', 'skill_id', name='uq_subskill_name_skill'),)

    def to_dict(self):
        return {
            'id': self.id,
            'skill_id': self.skill_id,
            'name': self.name,
            'description': self.description,
        }


class CategoryPreference(db.Model):
    """Categories an employee has chosen to show on their skills page."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey('skill_category.id', ondelete='CASCADE'),
                            nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    category = db.relationship('SkillCategory',
                               backref=db.backref('preferences', cascade='all, delete-orphan'))

    __table_args__ = (db.UniqueConstraint('user_id', 'category_id', name='uq_preference_user_category'),)

#------------------------------------------------------------------------------
# Ratings
#------------------------------------------------------------------------------

class EmployeeRating(db.Model):
    """
    A self-submitted proficiency level against a skill or subskill.
    Starts as 'submitted' and is approved or rejected by a manager.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=False, index=True)
    skill_id = db.Column(db.Integer, db.ForeignKey('skill.id', ondelete='CASCADE'), nullable=False, index=True)
    subskill_id = db.Column(db.Integer, db.ForeignKey('subskill.id', ondelete='CASCADE'), nullable=True, index=True)
    rating = db.Column(db.String(10), nullable=False)  # low / medium / high
    status = db.Column(db.String(20), nullable=False, default='submitted', index=True)
    self_comment = db.Column(db.Text)
    approver_comment = db.Column(db.Text)
    submitted_at = db.Column(db.DateTime, default=datetime.utcnow)
    approved_by = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    approver = db.relationship('Employee', foreign_keys=[approved_by])

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'skill_id': self.skill_id,
            'skill_name': self.skill.name if self.skill else '',
            'subskill_id': self.subskill_id,
            'subskill_name': self.subskill.name if self.subskill else None,
            'rating': self.rating,
            'status': self.status,
            'self_comment': self.self_comment,
            'approver_comment': self.approver_comment,
            'submitted_at': _iso(self.submitted_at),
            'approved_at': _iso(self.approved_at),
        }

#------------------------------------------------------------------------------
# Projects and staffing
#------------------------------------------------------------------------------

class Project(db.Model):
    """A project staffed month by month against required subskill levels."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    customer_name = db.Column(db.String(200))
    tech_lead_id = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(30), nullable=False, default='awaiting_approval', index=True)

    created_by = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=False)
    approved_by = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    rejected_by = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    month_wise_manpower = db.Column(JSON, nullable=True)  # [{'month': 'YYYY-MM', 'limit': 1.5}, ...]
    pending_changes = db.Column(JSON, nullable=True)  # previous values while an edit awaits approval

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tech_lead = db.relationship('Employee', foreign_keys=[tech_lead_id])
    creator = db.relationship('Employee', foreign_keys=[created_by])
    required_skills = db.relationship('ProjectRequiredSkill', backref='project', lazy=True,
                                      cascade='all, delete-orphan')
    assignments = db.relationship('ProjectAssignment', backref='project', lazy=True,
                                  cascade='all, delete-orphan')
    history_entries = db.relationship('AllocationHistory', backref='project', lazy=True,
                                      cascade='all, delete-orphan')


class ProjectRequiredSkill(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id', ondelete='CASCADE'), nullable=False, index=True)
    skill_id = db.Column(db.Integer, db.ForeignKey('skill.id', ondelete='CASCADE'), nullable=False)
    subskill_id = db.Column(db.Integer, db.ForeignKey('subskill.id', ondelete='CASCADE'), nullable=False)
    required_rating = db.Column(db.String(10), nullable=False)

    def to_dict(self):
        return {
            'skill_id': self.skill_id,
            'skill_name': self.skill.name if self.skill else '',
            'subskill_id': self.subskill_id,
            'subskill_name': self.subskill.name if self.subskill else '',
            'required_rating': self.required_rating,
        }


class ProjectAssignment(db.Model):
    """Percentage of an employee's time given to a project for one month."""
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=False, index=True)
    month = db.Column(db.String(7), nullable=False, index=True)  # YYYY-MM
    allocation_percentage = db.Column(db.Float, nullable=False)
    assigned_by = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('project_id', 'user_id', 'month', name='uq_assignment_month'),)


class AllocationHistory(db.Model):
    """Append-only record of allocation changes on a project."""
    __tablename__ = 'allocation_history'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=False, index=True)
    month = db.Column(db.String(7), nullable=True)
    previous_allocation = db.Column(db.Float, nullable=True)  # None for a newly added member
    new_allocation = db.Column(db.Float, nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=False)
    change_reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    member = db.relationship('Employee', foreign_keys=[user_id])
    changed_by_user = db.relationship('Employee', foreign_keys=[changed_by])

#------------------------------------------------------------------------------
# Access, notifications and audit
#------------------------------------------------------------------------------

class PageAccess(db.Model):
    """Per-role page access overrides. Roles without rows use the built-in map."""
    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.String(20), nullable=False, index=True)
    route = db.Column(db.String(100), nullable=False)
    has_access = db.Column(db.Boolean, nullable=False, default=True)

    __table_args__ = (db.UniqueConstraint('role', 'route', name='uq_page_access_role_route'),)


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    link = db.Column(db.String(255))
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'message': self.message,
            'link': self.link,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at),
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('employee.id'), nullable=True)  # Nullable for system actions
    user_email = db.Column(db.String(120), nullable=True)
    action = db.Column(db.String(255), nullable=False, index=True)
    target_type = db.Column(db.String(50), nullable=True, index=True)
    target_id = db.Column(db.Integer, nullable=True)
    details = db.Column(JSON, nullable=True)

    user = db.relationship('Employee')

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': _iso(self.timestamp),
            'user_id': self.user_id,
            'user_email': self.user_email,
            'action': self.action,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'details': self.details,
        }
