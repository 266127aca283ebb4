from datetime import datetime, timezone
from typing import List, Optional
from sqlmodel import Field, Relationship, SQLModel


class SideBase(SQLModel):
    name: str = Field(index=True, max_length=100, description="Side name, e.g. Light")


class Side(SideBase, table=True):
    """A side of the force; owns its users and at most one test."""
    __tablename__ = "sides"

    id: Optional[int] = Field(default=None, primary_key=True)

    users: List["User"] = Relationship(
        back_populates="side",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    test: Optional["Test"] = Relationship(
        back_populates="side",
        sa_relationship_kwargs={"uselist": False, "cascade": "all, delete-orphan"},
    )


class UserBase(SQLModel):
    name: str = Field(max_length=100)
    surname: str = Field(max_length=100)
    side_id: int = Field(foreign_key="sides.id", index=True)


class User(UserBase, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)

    side: Optional[Side] = Relationship(back_populates="users")


class Test(SQLModel, table=True):
    """One-to-one with Side."""
    __tablename__ = "tests"

    id: Optional[int] = Field(default=None, primary_key=True)
    test_name: str = Field(max_length=100)
    side_id: int = Field(foreign_key="sides.id", unique=True)

    side: Optional[Side] = Relationship(back_populates="test")
    test_descriptions: List["TestDescription"] = Relationship(
        back_populates="test",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class TestDescription(SQLModel, table=True):
    __tablename__ = "test_descriptions"

    id: Optional[int] = Field(default=None, primary_key=True)
    description: str
    test_id: int = Field(foreign_key="tests.id", index=True)
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    test: Optional[Test] = Relationship(back_populates="test_descriptions")


# --- API schemas ---
class SideCreate(SideBase):
    pass


class SideRead(SideBase):
    id: int


class UserCreate(UserBase):
    pass


class UserUpdate(SQLModel):
    name: str
    surname: str
    side_id: int


class UserRead(UserBase):
    id: int


class SideReadWithUsers(SideRead):
    users: List[UserRead] = []


class TestDescriptionRead(SQLModel):
    id: int
    description: str
    date: datetime


class TestRead(SQLModel):
    id: int
    test_name: str
    test_descriptions: List[TestDescriptionRead] = []


class SideReadWithTest(SideRead):
    test: Optional[TestRead] = None


class UserReadWithSide(UserRead):
    """User with its side, the side's test and the test's descriptions."""
    side: Optional[SideReadWithTest] = None


class TransactionalInsert(SQLModel):
    """Users and a new side written in one explicit transaction."""
    users: List[UserCreate]
    side_name: str = "My Side"
