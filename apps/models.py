"""
Model registration: import every table model here so SQLModel.metadata knows
all tables before create_all() runs.
"""
from apps.starwars.models import Side, Test, TestDescription, User

__all__ = ["Side", "Test", "TestDescription", "User"]
