from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import inspect

# Initialize SQLAlchemy instance
db = SQLAlchemy()

def init_db(app):
    """Initialize the database with the app and create any missing tables"""
    db.init_app(app)

    # Models must be registered on the metadata before tables are created
    import models  # noqa: F401

    with app.app_context():
        engine = db.engine
        inspector = inspect(engine)
        existing_tables = inspector.get_table_names()

        db.Model.metadata.create_all(bind=engine,
                                     tables=[table for table in db.Model.metadata.tables.values()
                                             if table.name not in existing_tables])
