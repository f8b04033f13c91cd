"""Create the dive log tables.

Binds the PonyORM models using the same environment variables as the web
app (DATABASE_URL, PG* or DATABASE_FILE) and creates any missing tables.

Usage:
  python scripts/create_tables.py
  python scripts/create_tables.py --drop   # DESTRUCTIVE: drop everything first

Running it twice is harmless; existing tables are left alone.
"""

import argparse
import os
import sys

# `python scripts/create_tables.py` puts scripts/ on sys.path[0]; the models
# live one directory up.
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from models import db, init_db  # noqa: E402


def drop_all_tables():
    """Drop every mapped table together with its rows."""
    init_db(create_tables=False)
    print(f'Database provider: {db.provider.dialect}')
    db.drop_all_tables(with_all_data=True)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Create database tables for the dive log')
    parser.add_argument('--drop', action='store_true',
                        help='Drop all existing tables before creating new ones (DESTRUCTIVE)')
    parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation with --drop')
    args = parser.parse_args(argv)

    if args.drop:
        if not args.yes:
            print('WARNING: --drop will DELETE ALL DATA from the database!')
            response = input('Are you sure you want to continue? (yes/no): ')
            if response.lower() != 'yes':
                print('Aborted.')
                return 0
        drop_all_tables()
        print('Dropped all tables')
        db.create_tables()
        print('Recreated tables')
        return 0

    print('Binding DB and generating mappings (create_tables=True)')
    init_db(create_tables=True)
    print('Done. Pony provider:', db.provider.dialect)
    return 0


if __name__ == '__main__':
    sys.exit(main())
