from .answer_sheet_routes import create_answer_sheet_routes
from .file_routes import create_file_routes
from .flag_routes import create_flag_routes
from .notification_routes import create_notification_routes


def include_all_routes(app, container):
    """Register every router on the application."""
    app.include_router(create_answer_sheet_routes(container))
    app.include_router(create_flag_routes(container))
    app.include_router(create_notification_routes(container))
    app.include_router(create_file_routes(container))
