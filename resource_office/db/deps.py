from collections.abc import Generator

from .session import SessionLocalOffice


def get_office_db() -> Generator:
    db = SessionLocalOffice()
    try:
        yield db
    finally:
        db.close()
