"""
Blueprint-based route organization for the proximity API
"""


def register_blueprints(app):
    """Register all route blueprints with the Quart app (admin first)."""
    from .admin import register as register_admin
    from .runs import register as register_runs

    register_admin(app)
    register_runs(app)
