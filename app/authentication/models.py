"""
Authentication models.

User is the custom user model with email-based login. The ``role``
field decides which side of an appointment a user acts on: patients
book and cancel, therapists and admins move appointments through their
lifecycle and complete sessions.

Related files:
    - managers.py: Custom user manager for email-based creation
"""

from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin
from django.db import models

from authentication.managers import UserManager


class UserRole(models.TextChoices):
    PATIENT = "patient", "Patient"
    THERAPIST = "therapist", "Therapist"
    ADMIN = "admin", "Admin"


class User(AbstractBaseUser, PermissionsMixin):
    """
    Custom User model using email as the primary identifier.

    Fields:
        email: Primary identifier, unique, used for login
        role: Platform role (patient, therapist, admin)
        is_active: Whether the user account is active
        is_staff: Whether the user can access Django admin
        date_joined: When the user account was created
        updated_at: When the user record was last modified

    Usage:
        patient = User.objects.create_user(email="p@example.com", password="pw")
        therapist = User.objects.create_user(
            email="t@example.com", password="pw", role=UserRole.THERAPIST
        )
    """

    email = models.EmailField(
        unique=True,
        db_index=True,
        max_length=254,
        help_text="User's email address (primary identifier)",
    )
    role = models.CharField(
        max_length=20,
        choices=UserRole.choices,
        default=UserRole.PATIENT,
        db_index=True,
        help_text="Platform role deciding which appointment operations are allowed",
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether this user account is active. Deselect instead of deleting.",
    )
    is_staff = models.BooleanField(
        default=False,
        help_text="Whether the user can access the admin site.",
    )
    date_joined = models.DateTimeField(
        auto_now_add=True,
        help_text="When the user account was created",
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When the user record was last modified",
    )

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = []

    objects = UserManager()

    class Meta:
        verbose_name = "user"
        verbose_name_plural = "users"
        ordering = ["-date_joined"]

    def __str__(self):
        return self.email

    @property
    def is_patient(self) -> bool:
        return self.role == UserRole.PATIENT

    @property
    def can_manage_appointments(self) -> bool:
        """Therapists, admins and staff may drive appointment lifecycles."""
        return self.is_staff or self.role in (UserRole.THERAPIST, UserRole.ADMIN)

    @property
    def is_platform_admin(self) -> bool:
        return self.is_staff or self.role == UserRole.ADMIN
