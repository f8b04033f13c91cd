"""Give an existing user the admin role.

Admins review instructor applications. There is no HTTP route that grants
the role, so the first admin is set up by an operator with this script:

  python scripts/grant_admin.py <uid>
  python scripts/grant_admin.py <uid> --role diver   # revoke
"""

import argparse
import os
import sys

_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from pony.orm import db_session  # noqa: E402

from models import ROLES, User, init_db, now_iso  # noqa: E402


def set_role(uid, role='admin'):
    if role not in ROLES:
        raise ValueError(f'unknown role {role!r}')
    with db_session:
        user = User.get(uid=uid)
        if user is None:
            return False
        user.set(role=role, updated_at=now_iso())
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(description='Set the role of an existing dive log user')
    parser.add_argument('uid')
    parser.add_argument('--role', default='admin', choices=ROLES)
    args = parser.parse_args(argv)

    init_db(create_tables=False)
    if not set_role(args.uid, args.role):
        print(f'No user with uid {args.uid}; they must sign in once first')
        return 1
    print(f'uid {args.uid} is now {args.role}')
    return 0


if __name__ == '__main__':
    sys.exit(main())
