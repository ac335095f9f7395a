"""
Route initialization and blueprint registration
"""


def init_routes(app, csrf):
    """Register the provider linking API"""
    from routes.fhir_routes import fhir_bp

    app.register_blueprint(fhir_bp)

    # JSON API and OAuth redirects carry no form token
    csrf.exempt(fhir_bp)
