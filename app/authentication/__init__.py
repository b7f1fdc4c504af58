"""
Authentication application.

Email-based User model carrying the platform role (patient, therapist,
admin) that the appointment engine uses for authorization. Tokens are
issued by rest_framework_simplejwt.

Usage:
    from authentication.models import User, UserRole
"""
