"""Operator commands.

Usage:
    python cli.py create-user <email> <username> <password> [--role admin]
    python cli.py set-role <email> <role>
    python cli.py flush-cache
"""

import argparse
import logging
import sys

from pydantic import ValidationError
from sqlalchemy import func, select

from cache import CacheError, ReadThroughCache, create_store
from config import get_settings
from database import init_db, session_scope
from errors import LedgerError
from models import Role, User
from schemas import RegisterIn
from services import UserService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def cmd_create_user(args: argparse.Namespace) -> int:
    init_db()
    data = RegisterIn(email=args.email, username=args.username, password=args.password)
    with session_scope() as session:
        user = UserService(session).register(data, role=Role(args.role))
        logger.info(f"create_user: id={user.id} role={user.role.value}")
    return 0


def cmd_set_role(args: argparse.Namespace) -> int:
    with session_scope() as session:
        user = session.scalar(
            select(User).where(func.lower(User.email) == args.email.lower())
        )
        if not user:
            logger.error(f"set_role: no user with email={args.email}")
            return 1
        user.role = Role(args.role)
        logger.info(f"set_role: id={user.id} role={user.role.value}")
    # Tokens carry the role, so the change applies from the next login.
    return 0


def cmd_flush_cache(_args: argparse.Namespace) -> int:
    settings = get_settings()
    cache = ReadThroughCache(create_store(settings), settings.cache_ttls)
    removed = cache.clear()
    logger.info(f"flush_cache: removed={removed}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledger")
    sub = parser.add_subparsers(dest="command", required=True)
    roles = [r.value for r in Role]

    create = sub.add_parser("create-user", help="create a user with a given role")
    create.add_argument("email")
    create.add_argument("username")
    create.add_argument("password")
    create.add_argument("--role", choices=roles, default=Role.admin.value)
    create.set_defaults(func=cmd_create_user)

    set_role = sub.add_parser("set-role", help="change an existing user's role")
    set_role.add_argument("email")
    set_role.add_argument("role", choices=roles)
    set_role.set_defaults(func=cmd_set_role)

    flush = sub.add_parser("flush-cache", help="drop every cached response")
    flush.set_defaults(func=cmd_flush_cache)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except LedgerError as exc:
        logger.error(f"{args.command}: {exc.message}")
        return 1
    except (ValidationError, CacheError) as exc:
        logger.error(f"{args.command}: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
