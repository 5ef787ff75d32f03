"""Route modules mounted by ``landed_cost.api.app.create_app``."""
