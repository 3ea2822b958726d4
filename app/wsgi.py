from app.hierarchies import create_app

app = create_app()
