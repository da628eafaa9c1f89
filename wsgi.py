from outbound import create_app

app = create_app()

# gunicorn wsgi:app
# Set IS_SCHEDULER_WORKER on exactly one instance when SCHEDULER_ENABLED is on.
