"""WTForms definitions. Flask-WTF reads these from form posts or JSON bodies."""

from flask_wtf import FlaskForm
from wtforms import DateField, EmailField, FloatField, IntegerField, PasswordField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Email, Length, NumberRange, Optional, Regexp, ValidationError

from models import EMPLOYEE_STATUSES, ROLES

_ROLE_CHOICES = [(role, role.replace('_', ' ').title()) for role in ROLES]
_STATUS_CHOICES = [(status, status.title()) for status in EMPLOYEE_STATUSES]


class ProfileForm(FlaskForm):
    """Form for users to edit their profile information."""
    full_name = StringField('Full Name', validators=[DataRequired(), Length(max=100)])
    email = EmailField('Email', validators=[DataRequired(), Email()])
    phone_number = StringField('Phone Number', validators=[Optional(), Length(max=20)])
    about_me = TextAreaField('About Me', validators=[Optional(), Length(max=500)])


class CategoryForm(FlaskForm):
    name = StringField('Category Name', validators=[DataRequired(), Length(max=100)])
    description = TextAreaField('Description', validators=[Optional(), Length(max=1000)])
    color = StringField('Color', validators=[Optional(), Regexp(r'^#[0-9A-Fa-f]{6}$', message='Use a hex color like #3B82F6.')])


# Used for both skills and subskills
class SkillForm(FlaskForm):
    name = StringField('Name', validators=[DataRequired(), Length(max=100)])
    description = TextAreaField('Description', validators=[Optional(), Length(max=1000)])


class ProjectForm(FlaskForm):
    """Scalar project fields. Required skills and members travel as JSON lists."""
    name = StringField('Project Name', validators=[DataRequired(), Length(max=200)])
    customer_name = StringField('Customer Name', validators=[DataRequired(), Length(max=200)])
    description = TextAreaField('Description', validators=[DataRequired()])
    tech_lead_id = IntegerField('Tech Lead', validators=[Optional()])
    start_date = DateField('Start Date', validators=[DataRequired()])
    end_date = DateField('End Date', validators=[DataRequired()])

    def validate_end_date(self, field):
        if self.start_date.data and field.data and field.data < self.start_date.data:
            raise ValidationError('End date cannot be before the start date.')


class ProjectUpdateForm(FlaskForm):
    """Partial project edit; every field is optional."""
    name = StringField('Project Name', validators=[Optional(), Length(max=200)])
    customer_name = StringField('Customer Name', validators=[Optional(), Length(max=200)])
    description = TextAreaField('Description', validators=[Optional()])
    tech_lead_id = IntegerField('Tech Lead', validators=[Optional()])
    start_date = DateField('Start Date', validators=[Optional()])
    end_date = DateField('End Date', validators=[Optional()])


class ProjectStatusForm(FlaskForm):
    status = SelectField('Status', choices=[('active', 'Approve'), ('rejected', 'Reject'), ('completed', 'Complete')],
                         validators=[DataRequired()])
    rejection_reason = TextAreaField('Rejection Reason', validators=[Length(max=1000)])

    def validate_rejection_reason(self, field):
        if self.status.data == 'rejected' and not (field.data or '').strip():
            raise ValidationError('Please provide a rejection reason')


class AllocationForm(FlaskForm):
    user_id = IntegerField('Employee', validators=[DataRequired()])
    month = StringField('Month', validators=[DataRequired(), Regexp(r'^\d{4}-\d{2}$', message='Use YYYY-MM.')])
    allocation_percentage = FloatField('Allocation (%)', validators=[NumberRange(min=0, max=100)])
    reason = StringField('Reason', validators=[Optional(), Length(max=255)])


class ReviewForm(FlaskForm):
    comment = TextAreaField('Comment', validators=[Optional(), Length(max=1000)])


class EmployeeForm(FlaskForm):
    """Admin form for creating a user."""
    full_name = StringField('Full Name', validators=[DataRequired(), Length(max=100)])
    email = EmailField('Email', validators=[DataRequired(), Email()])
    password = PasswordField('Password', validators=[DataRequired(), Length(min=8)])
    role = SelectField('Role', choices=_ROLE_CHOICES, default='employee')
    job_title = StringField('Job Title', validators=[Optional(), Length(max=100)])


class EmployeeUpdateForm(FlaskForm):
    role = SelectField('Role', choices=_ROLE_CHOICES, validators=[Optional()])
    status = SelectField('Status', choices=_STATUS_CHOICES, validators=[Optional()])
    job_title = StringField('Job Title', validators=[Optional(), Length(max=100)])
