from app.routes import cart_bp, payments_bp


def register_api_v1(app):
    """Register blueprint routes under the API version prefix."""
    app.register_blueprint(cart_bp)
    app.register_blueprint(payments_bp)
