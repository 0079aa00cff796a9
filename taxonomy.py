"""Skill taxonomy: categories, skills and subskills.

Also covers the per-employee category preferences and the CSV
import/export of the whole hierarchy.
"""

import csv
import io

from flask import current_app
from sqlalchemy import func

from database import db
from errors import ValidationError
from models import CategoryPreference, Skill, SkillCategory, Subskill

CSV_HEADERS = ['Category', 'Skill', 'Subskill', 'Description']

#------------------------------------------------------------------------------
# Categories, skills, subskills
#------------------------------------------------------------------------------

def list_categories(search=None):
    """All categories ordered by name, optionally filtered on name or description."""
    query = SkillCategory.query
    if search:
        pattern = f'%{search.strip()}%'
        query = query.filter(db.or_(SkillCategory.name.ilike(pattern),
                                    SkillCategory.description.ilike(pattern)))
    return query.order_by(SkillCategory.name).all()


def _clean_name(name, what):
    name = (name or '').strip()
    if not name:
        raise ValidationError(f'{what} name is required.')
    return name


def create_category(name, description=None, color=None):
    name = _clean_name(name, 'Category')
    if SkillCategory.query.filter(SkillCategory.name.ilike(name)).first():
        raise ValidationError(f'Category "{name}" already exists.')
    category = SkillCategory(name=name, description=description or None,
                             color=color or current_app.config['DEFAULT_CATEGORY_COLOR'])
    db.session.add(category)
    db.session.flush()
    return category


def update_category(category, name=None, description=None, color=None):
    if name is not None:
        name = _clean_name(name, 'Category')
        duplicate = SkillCategory.query.filter(SkillCategory.name.ilike(name),
                                               SkillCategory.id != category.id).first()
        if duplicate:
            raise ValidationError(f'Category "{name}" already exists.')
        category.name = name
    if description is not None:
        category.description = description or None
    if color:
        category.color = color
    return category


def delete_category(category):
    """Delete a category with its skills, subskills, ratings and project requirements."""
    summary = {
        'name': category.name,
        'skills': len(category.skills),
        'subskills': sum(len(skill.subskills) for skill in category.skills),
    }
    db.session.delete(category)
    return summary


def create_skill(category_id, name, description=None):
    category = SkillCategory.query.get_or_404(category_id)
    name = _clean_name(name, 'Skill')
    if Skill.query.filter(Skill.category_id == category.id, Skill.name.ilike(name)).first():
        raise ValidationError(f'Skill "{name}" already exists in {category.name}.')
    skill = Skill(category_id=category.id, name=name, description=description or None)
    db.session.add(skill)
    db.session.flush()
    return skill


def update_skill(skill, name=None, description=None):
    if name is not None:
        name = _clean_name(name, 'Skill')
        duplicate = Skill.query.filter(Skill.category_id == skill.category_id,
                                       Skill.name.ilike(name), Skill.id != skill.id).first()
        if duplicate:
            raise ValidationError(f'Skill "{name}" already exists in this category.')
        skill.name = name
    if description is not None:
        skill.description = description or None
    return skill


def create_subskill(skill_id, name, description=None):
    skill = Skill.query.get_or_404(skill_id)
    name = _clean_name(name, 'Subskill')
    if Subskill.query.filter(Subskill.skill_id == skill.id, Subskill.name.ilike(name)).first():
        raise ValidationError(f'Subskill "{name}" already exists under {skill.name}.')
    subskill = Subskill(skill_id=skill.id, name=name, description=description or None)
    db.session.add(subskill)
    db.session.flush()
    return subskill


def update_subskill(subskill, name=None, description=None):
    if name is not None:
        name = _clean_name(name, 'Subskill')
        duplicate = Subskill.query.filter(Subskill.skill_id == subskill.skill_id,
                                          Subskill.name.ilike(name), Subskill.id != subskill.id).first()
        if duplicate:
            raise ValidationError(f'Subskill "{name}" already exists under this skill.')
        subskill.name = name
    if description is not None:
        subskill.description = description or None
    return subskill


def hierarchy():
    """Nested categories -> skills -> subskills, ready for JSON."""
    result = []
    for category in list_categories():
        item = category.to_dict()
        item['skills'] = []
        for skill in category.skills:
            skill_item = skill.to_dict()
            skill_item['subskills'] = [subskill.to_dict() for subskill in skill.subskills]
            item['skills'].append(skill_item)
        result.append(item)
    return result

#------------------------------------------------------------------------------
# Category preferences
#------------------------------------------------------------------------------

def visible_category_ids(user):
    """Managers see every category; everyone else sees the ones they picked."""
    if user.is_manager:
        return [category_id for (category_id,) in db.session.query(SkillCategory.id).order_by(SkillCategory.name)]
    rows = CategoryPreference.query.filter_by(user_id=user.id).all()
    return [row.category_id for row in rows]


def add_categories(user, category_ids):
    existing = set(visible_category_ids(user))
    added = []
    for category_id in category_ids:
        if category_id in existing:
            continue
        SkillCategory.query.get_or_404(category_id)
        db.session.add(CategoryPreference(user_id=user.id, category_id=category_id))
        existing.add(category_id)
        added.append(category_id)
    return added


def hide_category(user, category_id):
    deleted = CategoryPreference.query.filter_by(user_id=user.id, category_id=category_id).delete()
    return deleted > 0

#------------------------------------------------------------------------------
# CSV import / export
#------------------------------------------------------------------------------

def export_hierarchy_csv():
    """Flatten the taxonomy into Category,Skill,Subskill,Description rows."""
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL)
    writer.writerow(CSV_HEADERS)

    for category in list_categories():
        if not category.skills:
            writer.writerow([category.name, '', '', category.description or ''])
        for skill in category.skills:
            if not skill.subskills:
                writer.writerow([category.name, skill.name, '', skill.description or ''])
            for subskill in skill.subskills:
                writer.writerow([category.name, skill.name, subskill.name, subskill.description or ''])

    return output.getvalue()


def parse_hierarchy_csv(text):
    """Parse uploaded CSV text into a list of row dicts keyed by header."""
    if text.startswith('\ufeff'):
        text = text[1:]
    if not text.strip():
        raise ValidationError('The CSV file is empty.')
    try:
        reader = csv.DictReader(io.StringIO(text))
        headers = [header.strip() for header in (reader.fieldnames or [])]
        if 'Category' not in headers:
            raise ValidationError('Invalid CSV format: a "Category" column is required.')
        rows = []
        for raw in reader:
            rows.append({(key or '').strip(): (value or '').strip() for key, value in raw.items()
                         if key is not None})
    except csv.Error as e:
        raise ValidationError(f'Invalid CSV format: {e}')
    return rows


def preview_rows(rows, limit=None):
    limit = limit or current_app.config['IMPORT_PREVIEW_ROWS']
    return {
        'total': len(rows),
        'rows': rows[:limit],
        'remaining': max(0, len(rows) - limit),
    }


def import_hierarchy(rows):
    """Create any categories, skills and subskills named in the rows.

    Existing entries are reused, matching names case-insensitively, so
    importing the same file twice is a no-op.
    Rows without a category are skipped.
    """
    counts = {'categories': 0, 'skills': 0, 'subskills': 0, 'skipped': 0}
    categories = {category.name.lower(): category for category in SkillCategory.query.all()}
    default_color = current_app.config['DEFAULT_CATEGORY_COLOR']

    for row in rows:
        category_name = (row.get('Category') or '').strip()
        skill_name = (row.get('Skill') or '').strip()
        subskill_name = (row.get('Subskill') or '').strip()
        description = (row.get('Description') or '').strip() or None

        if not category_name:
            counts['skipped'] += 1
            continue

        category = categories.get(category_name.lower())
        if category is None:
            category = SkillCategory(name=category_name, color=default_color,
                                     description=description if not skill_name else None)
            db.session.add(category)
            db.session.flush()
            categories[category_name.lower()] = category
            counts['categories'] += 1

        if not skill_name:
            continue

        skill = Skill.query.filter(Skill.category_id == category.id,
                                   func.lower(Skill.name) == skill_name.lower()).first()
        if skill is None:
            skill = Skill(category_id=category.id, name=skill_name,
                          description=description if not subskill_name else None)
            db.session.add(skill)
            db.session.flush()
            counts['skills'] += 1

        if not subskill_name:
            continue

        if not Subskill.query.filter(Subskill.skill_id == skill.id,
                                     func.lower(Subskill.name) == subskill_name.lower()).first():
            db.session.add(Subskill(skill_id=skill.id, name=subskill_name, description=description))
            db.session.flush()
            counts['subskills'] += 1

    current_app.logger.info('Skill hierarchy import: %s', counts)
    return counts
