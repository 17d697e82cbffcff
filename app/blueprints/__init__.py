"""
Bookable Fulfillment Platform
Blueprint registry.

    health_bp               /api/v1/health
    standing_reservation_bp /api/v1/standing-reservations
    fulfillment_bp          /api/v1/fulfillment
    scheduler_bp            /api/v1/scheduler
"""
