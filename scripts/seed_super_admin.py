#!/usr/bin/env python3
"""
Seed an operator (super-admin) account for the FIC Sync Engine admin API.

Reads SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD and optional SUPER_ADMIN_NAME from .env.
Run from project root: python scripts/seed_super_admin.py
"""

import sys
import os

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.db import supabase
from src.routers.super_admin import hash_password


def main():
    email = os.getenv("SUPER_ADMIN_EMAIL")
    password = os.getenv("SUPER_ADMIN_PASSWORD")
    name = os.getenv("SUPER_ADMIN_NAME") or "FIC Operator"

    if not email or not password:
        print("Error: SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD must be set in .env")
        sys.exit(1)

    existing = supabase.table("super_admins").select("id").eq("email", email).execute()
    if existing.data:
        print(f"Operator '{email}' already exists (id {existing.data[0]['id']}).")
        sys.exit(0)

    result = supabase.table("super_admins").insert({
        "email": email,
        "password_hash": hash_password(password),
        "name": name,
    }).execute()

    if not result.data:
        print("Error: failed to create operator")
        sys.exit(1)
    operator = result.data[0]
    print(f"Created operator {operator['email']} (id {operator['id']})")


if __name__ == "__main__":
    main()
