from typing import Iterator

from sqlmodel import Session

from . import crud


def get_session() -> Iterator[Session]:
    # request-scoped store session
    with crud.open_session() as session:
        yield session
