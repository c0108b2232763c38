"""
ThumbPilot API Routers.

Modules:
    campaigns – Create campaigns, inspect status and pipelines, trigger iterations
    health    – Health, readiness and liveness checks
"""
