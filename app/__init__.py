# app/__init__.py
import logging
from flask import Flask, current_app
from flask_sqlalchemy import SQLAlchemy
from flask_apscheduler import APScheduler
import pytz
import humanize
from datetime import datetime

from config import config_by_name

db = SQLAlchemy()
scheduler = APScheduler()


def format_datetime(value):
    if not value: return None
    app_tz = pytz.timezone(current_app.config['APP_TIMEZONE'])
    if value.tzinfo is None: value = pytz.utc.localize(value)
    local_time = value.astimezone(app_tz)
    return local_time.strftime('%a, %b %d, %Y at %I:%M %p %Z')


def relative_time(value):
    if not value: return None
    app_tz = pytz.timezone(current_app.config['APP_TIMEZONE'])
    if value.tzinfo is None: value = pytz.utc.localize(value)
    now_aware = datetime.now(app_tz)
    return humanize.naturaltime(now_aware - value)


def _seed_default_settings(app):
    """
    Seeds the global sync, aggregation and promotion settings if they don't exist.
    Existing rows are never overwritten; operators own them after the first start.
    """
    with app.app_context():
        from .models import SystemSetting
        from .services.settings_service import DEFAULT_SETTINGS
        logger = logging.getLogger('app.seeder')

        for key, (description, default_value) in DEFAULT_SETTINGS.items():
            exists = SystemSetting.query.filter_by(key=key).first()
            if not exists:
                logger.info(f"  -> Seeding setting '{key}'")
                db.session.add(SystemSetting(key=key, value=default_value, description=description))
        db.session.commit()


def create_app(config_name='development'):
    """Application Factory Function"""
    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.setLevel(logging.INFO)
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        root_logger.addHandler(console_handler)
        root_logger.info('Logging configured successfully.')

    app.config['SCHEDULER_TIMEZONE'] = app.config['APP_TIMEZONE']

    db.init_app(app)
    app.logger.info("Database connection configured.")

    scheduler_enabled = app.config.get('SCHEDULER_ENABLED', True)
    if scheduler_enabled and not scheduler.running:
        scheduler.init_app(app)
        scheduler.start()
        app.logger.info(f"Scheduler started in timezone: {app.config['SCHEDULER_TIMEZONE']}")

    with app.app_context():
        from . import models
        db.create_all()
        app.logger.info("Application tables created or verified in the target database.")

        _seed_default_settings(app)

        from .routes import main_bp
        app.register_blueprint(main_bp)

        from .cli import register_commands
        register_commands(app)

        if scheduler_enabled:
            from .services.scheduler_service import load_and_schedule_jobs
            load_and_schedule_jobs(app, scheduler)

    return app
