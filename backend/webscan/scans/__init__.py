from .routes import scans_bp
