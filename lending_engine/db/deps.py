from collections.abc import Generator

from .session import SessionLocalLending


def get_lending_db() -> Generator:
    db = SessionLocalLending()
    try:
        yield db
    finally:
        db.close()
