#!/usr/bin/env python3
"""Create tables and seed the default asset catalog.

Safe to re-run: existing assets are refreshed in place.
Run from the repo root: python -m scripts.setup_db
"""

from app import create_app
from assets import seed_assets


def main():
    app = create_app()
    faucet = app.extensions["faucet"]
    with app.app_context():
        n = seed_assets(faucet["registry"], faucet["config"])
        active = [a.symbol for a in faucet["registry"].list_active()]
    print({"ok": True, "seeded": n, "active": active})


if __name__ == "__main__":
    main()
