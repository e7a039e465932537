from sqlalchemy.orm import Session

from database import Database
from models import User
from schemas import UserIn
from services import UserService


def make_session() -> Session:
    database = Database("sqlite:///:memory:")
    database.create_all()
    return database.session()


def make_user(session: Session, email: str = "ada@example.com") -> User:
    return UserService(session).create(
        UserIn(name=email.split("@")[0], email=email, password_hash="hashed"),
        with_default_categories=False,
    )
