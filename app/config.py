import os
from datetime import timedelta

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production-12345'
    UPLOAD_FOLDER = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'uploads')
    MAX_CONTENT_LENGTH = 200 * 1024 * 1024  # 200MB across all uploaded files
    ALLOWED_EXTENSIONS = {'csv', 'json', 'zip'}
    PERMANENT_SESSION_LIFETIME = timedelta(hours=2)
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    
    # Prevent browser caching
    SEND_FILE_MAX_AGE_DEFAULT = 0
    
    # Header candidates in priority order, matched ignoring case, spaces and underscores
    EMAIL_COLUMN_CANDIDATES = ['email_LkUp', 'email', 'Email', 'emailLkUp']
    CREATED_BY_COLUMN_CANDIDATES = ['CreatedBy0', 'createdby0', 'CreatedBy']
    
    IDENTITY_KEY = 'currentUser'
    INCLUSION_MARKER = 'behaviouralobservation'
    CATEGORY_MARKERS = (
        ('nearmiss', 'nearmiss'),
        ('hazard', 'hazard'),
        ('harm_injury', 'harminjury'),
        ('product', 'product'),
        ('sales_delivery', 'salesdelivery'),
    )
    
    PAGE_SIZE_OPTIONS = (5, 10, 20, 50, 100, 200, 300)
    DEFAULT_PAGE_SIZE = 20
    
    @staticmethod
    def init_app(app):
        os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
