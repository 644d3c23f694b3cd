from marketcore import create_app

app = create_app()
