# run.py
import os
from app import create_app

config_name = os.getenv('FLASK_ENV', 'development')
app = create_app(config_name)

if __name__ == '__main__':
    # use_reloader=False keeps APScheduler from starting twice in debug mode,
    # which would dispatch every wholesaler sync twice.
    app.run(debug=app.config['DEBUG'], use_reloader=False)
