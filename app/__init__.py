from flask import Flask
from app.config import Config
import logging

def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    config_class.init_app(app)
    
    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
    
    # No Flask-Session initialization - use built-in sessions
    
    from app.routes import main
    app.register_blueprint(main)
    
    return app
