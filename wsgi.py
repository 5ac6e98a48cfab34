from mfg_tracker import create_app

app = create_app()

# gunicorn -w 4 wsgi:app
