"""Management CLI.

Usage:
    python -m farmgrid.cli create-user <email> <full name>
    python -m farmgrid.cli issue-token <email>
    python -m farmgrid.cli audit-grids     # Farms whose plots break the grid invariants
"""

import sys

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from farmgrid.auth.jwt import create_access_token
from farmgrid.config import settings
from farmgrid.models import Farm, User
from farmgrid.services.grid import (
    area_limit,
    check_area_invariant,
    resolve_grid_config,
    total_plot_area,
)


def get_session() -> Session:
    engine = create_engine(settings.database_url_sync)
    return Session(engine)


def create_user(email: str, full_name: str):
    with get_session() as session:
        existing = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if existing:
            print(f"User {email} already exists ({existing.id})")
            return
        user = User(email=email, full_name=full_name)
        session.add(user)
        session.commit()
        print(f"Created user {email} ({user.id})")


def issue_token(email: str):
    with get_session() as session:
        user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not user or not user.is_active:
            print(f"No active user {email}")
            sys.exit(1)
        print(create_access_token(user.id))


def grid_problems(farm, slack: float) -> list[str]:
    """What is wrong with one farm's plots; empty when it is consistent."""
    problems = []
    plots = farm.plots or []
    grid = resolve_grid_config(farm)

    unnumbered = sum(1 for p in plots if p.get("plot_number") is None)
    if unnumbered:
        problems.append(f"{unnumbered} plot(s) without a plot number")

    numbers = sorted(p["plot_number"] for p in plots if p.get("plot_number") is not None)
    if numbers != list(range(1, grid.plot_count + 1)):
        problems.append(
            f"plots {len(numbers)} do not number 1..{grid.plot_count} "
            f"for {grid.rows}x{grid.cols} ({grid.source})"
        )
    if not check_area_invariant(farm.total_size, plots, slack):
        problems.append(
            f"plot area {total_plot_area(plots):.4f} over limit "
            f"{area_limit(farm.total_size, slack):.4f}"
        )
    return problems


def audit_grids() -> int:
    """Print one line per broken farm; return how many were found."""
    broken = 0
    with get_session() as session:
        farms = session.execute(
            select(Farm).where(Farm.is_active == True)  # noqa: E712
        ).scalars().all()

        for farm in farms:
            problems = grid_problems(farm, settings.plot_area_slack)
            if problems:
                broken += 1
                print(f"  {farm.id} {farm.name}: {'; '.join(problems)}")

    print(f"\n{broken} farm(s) with grid problems")
    return broken


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "create-user" and len(sys.argv) >= 4:
        create_user(sys.argv[2], " ".join(sys.argv[3:]))
    elif cmd == "issue-token" and len(sys.argv) == 3:
        issue_token(sys.argv[2])
    elif cmd == "audit-grids":
        sys.exit(1 if audit_grids() else 0)
    else:
        print("Usage: python -m farmgrid.cli [create-user <email> <name>|issue-token <email>|audit-grids]")
