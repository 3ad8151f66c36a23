from contextlib import contextmanager
import logging
from models import db


@contextmanager
def transactional(message="DB transaction failed"):
    """Commit on clean exit, roll back and re-raise on any error."""
    try:
        yield db.session
        db.session.commit()
    except Exception as e:
        logging.getLogger(__name__).error(f"{message}: %s", e, exc_info=True)
        db.session.rollback()
        raise
