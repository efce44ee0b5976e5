#!/usr/bin/env python3
"""Create database tables for the WhatsApp Campaign Engine."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. tenants (wallet lives on the tenant row)
CREATE TABLE IF NOT EXISTS tenants (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name VARCHAR(255) NOT NULL,
    credit_balance NUMERIC(12, 2) NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. tenant_channels (provider credentials per tenant)
CREATE TABLE IF NOT EXISTS tenant_channels (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    provider VARCHAR(20) NOT NULL CHECK (provider IN ('meta', '360dialog')),
    channel_ref VARCHAR(100),
    phone_number_id VARCHAR(100),
    access_token TEXT,
    api_key TEXT,
    app_secret TEXT,
    waba_id VARCHAR(100),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_tenant_channels_tenant ON tenant_channels(tenant_id);
CREATE INDEX IF NOT EXISTS idx_tenant_channels_phone_number_id ON tenant_channels(provider, phone_number_id);
CREATE INDEX IF NOT EXISTS idx_tenant_channels_channel_ref ON tenant_channels(provider, channel_ref);

-- 3. templates (synced from the provider; only APPROVED/ACTIVE rows are sendable)
CREATE TABLE IF NOT EXISTS templates (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    name VARCHAR(255) NOT NULL,
    language VARCHAR(20) NOT NULL DEFAULT 'en_US',
    category VARCHAR(30) NOT NULL DEFAULT 'MARKETING',
    components JSONB NOT NULL DEFAULT '[]'::jsonb,
    status VARCHAR(30) NOT NULL DEFAULT 'PENDING',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(tenant_id, name, language)
);

-- 4. tenant_pricing (optional per-tenant unit prices)
CREATE TABLE IF NOT EXISTS tenant_pricing (
    tenant_id UUID PRIMARY KEY REFERENCES tenants(id) ON DELETE CASCADE,
    marketing NUMERIC(10, 4),
    utility NUMERIC(10, 4),
    authentication NUMERIC(10, 4),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 5. credit_transactions
CREATE TABLE IF NOT EXISTS credit_transactions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    amount NUMERIC(12, 2) NOT NULL,
    transaction_type VARCHAR(50) NOT NULL,
    template_category VARCHAR(30),
    template_name VARCHAR(255),
    campaign_name VARCHAR(255),
    description TEXT,
    balance_after NUMERIC(12, 2),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_credit_transactions_tenant ON credit_transactions(tenant_id, created_at DESC);

-- 6. campaign_logs (per-message ledger)
CREATE TABLE IF NOT EXISTS campaign_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    campaign_name VARCHAR(255) NOT NULL,
    template_name VARCHAR(255) NOT NULL,
    language_code VARCHAR(20),
    provider VARCHAR(20),
    provider_channel_ref VARCHAR(100),
    recipient_number VARCHAR(20) NOT NULL CHECK (LENGTH(TRIM(recipient_number)) > 0),
    message_id VARCHAR(255),
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'sent', 'delivered', 'read', 'failed', 'completed')),
    sent_at TIMESTAMPTZ,
    delivered_at TIMESTAMPTZ,
    read_at TIMESTAMPTZ,
    error_message TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_campaign_logs_tenant_message
    ON campaign_logs(tenant_id, message_id) WHERE message_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_campaign_logs_message_id ON campaign_logs(message_id);
CREATE INDEX IF NOT EXISTS idx_campaign_logs_campaign ON campaign_logs(tenant_id, campaign_name, created_at);

-- 7. message_fingerprints (duplicate send window)
CREATE TABLE IF NOT EXISTS message_fingerprints (
    tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    fingerprint VARCHAR(64) NOT NULL,
    template_name VARCHAR(255) NOT NULL,
    recipient_number VARCHAR(20) NOT NULL,
    seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (tenant_id, fingerprint)
);
CREATE INDEX IF NOT EXISTS idx_message_fingerprints_seen_at ON message_fingerprints(seen_at);

-- 8. atomic check-and-deduct
CREATE OR REPLACE FUNCTION deduct_tenant_credits(
    p_tenant_id UUID,
    p_amount NUMERIC,
    p_transaction_type VARCHAR,
    p_template_category VARCHAR,
    p_template_name VARCHAR,
    p_campaign_name VARCHAR,
    p_description TEXT
) RETURNS JSONB AS $$
DECLARE
    v_balance NUMERIC;
BEGIN
    SELECT credit_balance INTO v_balance FROM tenants WHERE id = p_tenant_id FOR UPDATE;
    IF v_balance IS NULL OR v_balance < p_amount THEN
        RETURN jsonb_build_object('success', FALSE, 'new_balance', COALESCE(v_balance, 0));
    END IF;

    UPDATE tenants
    SET credit_balance = credit_balance - p_amount, updated_at = NOW()
    WHERE id = p_tenant_id;

    INSERT INTO credit_transactions (
        tenant_id, amount, transaction_type, template_category, template_name,
        campaign_name, description, balance_after
    ) VALUES (
        p_tenant_id, -p_amount, p_transaction_type, p_template_category, p_template_name,
        p_campaign_name, p_description, v_balance - p_amount
    );

    RETURN jsonb_build_object('success', TRUE, 'new_balance', v_balance - p_amount);
END;
$$ LANGUAGE plpgsql;
"""


def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute("SELECT indexname FROM pg_indexes WHERE tablename = 'campaign_logs' ORDER BY indexname;")
    indexes = cur.fetchall()
    print(f"campaign_logs indexes: {[i[0] for i in indexes]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
