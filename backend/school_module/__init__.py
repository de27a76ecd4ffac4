from sqlalchemy.orm import Session

from .database import Base, engine
from .routes import router
from .services import seed_system_access


def init_school_module() -> None:
    Base.metadata.create_all(bind=engine)
    db = Session(bind=engine)
    try:
        seed_system_access(db)
    finally:
        db.close()


__all__ = ["router", "init_school_module"]
