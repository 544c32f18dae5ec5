"""ComfyUI Relay - FastAPI REST API layer.

Modules
-------
main
    FastAPI application factory, public routes and the ``main()`` CLI entry
    point.
admin
    Password-protected admin API used by the dashboard.
dependencies
    Accessors for the services stored on ``app.state``.
models
    Pydantic request models.
"""
