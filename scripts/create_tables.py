#!/usr/bin/env python3
"""Create database tables for the FIC Sync Engine."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. super_admins
CREATE TABLE IF NOT EXISTS super_admins (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    password_hash VARCHAR(255) NOT NULL,
    name VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. fic_accounts (written by the OAuth flow; ids are text so webhook path
-- segments can be matched without casts)
CREATE TABLE IF NOT EXISTS fic_accounts (
    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
    name VARCHAR(255),
    company_id VARCHAR(64) UNIQUE NOT NULL,
    company_name VARCHAR(255),
    access_token TEXT,
    refresh_token TEXT,
    token_expires_at TIMESTAMPTZ,
    status VARCHAR(20) NOT NULL DEFAULT 'active',
    status_note TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 3. fic_subscriptions: fic_subscription_id is the natural key;
-- (fic_account_id, event_group) is deliberately NOT unique.
CREATE TABLE IF NOT EXISTS fic_subscriptions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    fic_account_id TEXT NOT NULL REFERENCES fic_accounts(id) ON DELETE CASCADE,
    fic_subscription_id VARCHAR(255) UNIQUE NOT NULL,
    event_group VARCHAR(64) NOT NULL DEFAULT 'default',
    event_types JSONB NOT NULL DEFAULT '[]'::jsonb,
    sink TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    verification_method VARCHAR(10) NOT NULL DEFAULT 'header',
    webhook_secret TEXT,
    expires_at TIMESTAMPTZ,
    verification_attempts INTEGER NOT NULL DEFAULT 0,
    last_verification_attempt_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_fic_subscriptions_account_group
    ON fic_subscriptions(fic_account_id, event_group, is_active);
CREATE INDEX IF NOT EXISTS idx_fic_subscriptions_expires_at
    ON fic_subscriptions(expires_at) WHERE is_active AND expires_at IS NOT NULL;

-- 4. fic_events: delivery ledger, never deleted
CREATE TABLE IF NOT EXISTS fic_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    fic_account_id TEXT NOT NULL REFERENCES fic_accounts(id) ON DELETE CASCADE,
    event_type VARCHAR(255) NOT NULL,
    resource_type VARCHAR(20) NOT NULL CHECK (resource_type IN ('client', 'supplier', 'invoice', 'quote')),
    fic_resource_id VARCHAR(64) NOT NULL,
    event_key VARCHAR(255) NOT NULL,
    occurred_at TIMESTAMPTZ,
    status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'processed', 'failed')),
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    processed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (fic_account_id, event_type, resource_type, fic_resource_id, event_key)
);
CREATE INDEX IF NOT EXISTS idx_fic_events_status ON fic_events(status, created_at);
CREATE INDEX IF NOT EXISTS idx_fic_events_resource
    ON fic_events(fic_account_id, resource_type, fic_resource_id);

-- 5. local resource snapshots
CREATE TABLE IF NOT EXISTS fic_clients (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    fic_account_id TEXT NOT NULL REFERENCES fic_accounts(id) ON DELETE CASCADE,
    fic_client_id VARCHAR(64) NOT NULL,
    name VARCHAR(255),
    code VARCHAR(100),
    vat_number VARCHAR(64),
    fic_created_at TIMESTAMPTZ,
    fic_updated_at TIMESTAMPTZ,
    raw JSONB,
    synced_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (fic_account_id, fic_client_id)
);

CREATE TABLE IF NOT EXISTS fic_suppliers (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    fic_account_id TEXT NOT NULL REFERENCES fic_accounts(id) ON DELETE CASCADE,
    fic_supplier_id VARCHAR(64) NOT NULL,
    name VARCHAR(255),
    code VARCHAR(100),
    vat_number VARCHAR(64),
    fic_created_at TIMESTAMPTZ,
    fic_updated_at TIMESTAMPTZ,
    raw JSONB,
    synced_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (fic_account_id, fic_supplier_id)
);

CREATE TABLE IF NOT EXISTS fic_invoices (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    fic_account_id TEXT NOT NULL REFERENCES fic_accounts(id) ON DELETE CASCADE,
    fic_invoice_id VARCHAR(64) NOT NULL,
    number VARCHAR(64),
    status VARCHAR(32),
    total_gross NUMERIC(14, 2),
    fic_date DATE,
    fic_created_at TIMESTAMPTZ,
    raw JSONB,
    synced_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (fic_account_id, fic_invoice_id)
);

CREATE TABLE IF NOT EXISTS fic_quotes (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    fic_account_id TEXT NOT NULL REFERENCES fic_accounts(id) ON DELETE CASCADE,
    fic_quote_id VARCHAR(64) NOT NULL,
    number VARCHAR(64),
    status VARCHAR(32),
    total_gross NUMERIC(14, 2),
    fic_date DATE,
    fic_created_at TIMESTAMPTZ,
    raw JSONB,
    synced_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (fic_account_id, fic_quote_id)
);

-- 6. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(255),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    cur.execute(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND (table_name LIKE 'fic_%' OR table_name IN "
        "('super_admins', 'observability_metric_snapshots')) ORDER BY table_name;"
    )
    tables = cur.fetchall()
    print(f"\nTables present: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nDone!")


if __name__ == "__main__":
    main()
