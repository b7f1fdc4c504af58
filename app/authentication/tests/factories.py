"""
Factory Boy factories for authentication models.

Usage:
    from authentication.tests.factories import UserFactory, TherapistFactory

    patient = UserFactory()
    therapist = TherapistFactory()
    admin = UserFactory(role=UserRole.ADMIN, is_staff=True)
"""

import factory

from authentication.models import User, UserRole


class UserFactory(factory.django.DjangoModelFactory):
    """
    Factory for User model.

    Creates active patients by default. Passwords go through
    UserManager.create_user() so they are hashed.
    """

    class Meta:
        model = User
        skip_postgeneration_save = True

    email = factory.Sequence(lambda n: f"user{n}@example.com")
    role = UserRole.PATIENT
    is_active = True
    is_staff = False

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        """Override create to use UserManager.create_user()."""
        password = kwargs.pop("password", "TestPass123!")
        return model_class.objects.create_user(
            email=kwargs.pop("email"), password=password, **kwargs
        )


class TherapistFactory(UserFactory):
    email = factory.Sequence(lambda n: f"therapist{n}@example.com")
    role = UserRole.THERAPIST


class AdminFactory(UserFactory):
    email = factory.Sequence(lambda n: f"admin{n}@example.com")
    role = UserRole.ADMIN
    is_staff = True
