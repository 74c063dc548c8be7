"""
Invoice Approval Platform
Blueprint registry.

    health_bp        /api/v1/health
    invoice_bp       /api/v1/invoices
    hierarchy_bp     /api/v1/admin
    notification_bp  /api/v1/notifications
"""
