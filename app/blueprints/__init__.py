"""
Trade Ops Workflow Service
Blueprint registry.

    health_bp    /api/v1/health
    workflow_bp  /api/v1/workflow
"""
