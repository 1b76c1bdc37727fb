from typing import Optional

from sqlalchemy import create_engine

from campus_eats.config import settings
from campus_eats.db import check_connection


def main(database_url: Optional[str] = None) -> bool:
    database_url = database_url or settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    ok, error = check_connection(engine)
    engine.dispose()
    if ok:
        print("DB connection OK")
    else:
        print("DB connection FAILED")
        print(error)
    return ok


if __name__ == "__main__":
    raise SystemExit(0 if main() else 1)
