from app.veridrive import create_app

app = create_app()
