from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from models import db

def insert_if_absent(model, **values) -> bool:
    """
    Insert one row unless it collides with a unique key.

    Returns True when this call inserted the row. Used as the compare-and-set
    for concurrent first check-ins and broadcast delivery claims.
    """
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model.__table__).values(**values).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite.insert(model.__table__).values(**values).on_conflict_do_nothing()
    else:
        try:
            with db.session.begin_nested():
                db.session.add(model(**values))
            return True
        except IntegrityError:
            return False

    result = db.session.connection().execute(stmt)
    return result.rowcount == 1
