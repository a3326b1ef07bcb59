from app.teamdesk import create_app

app = create_app()
