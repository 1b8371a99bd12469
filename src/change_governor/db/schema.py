"""
SQLite schema for policy, action, approval and snapshot persistence.

This module defines the database schema for:
- Policy store (per-merchant automation settings, trigger rules)
- Action lifecycle (one row per action, mutated only by guarded transitions)
- Pending approvals (human review queue with recipient deduplication)
- Snapshots (append-only pre-change captures)
- Audit log (one row per lifecycle event)

Indexes required for correctness, not just performance:
- Partial unique indexes on pending approvals' dedup tuples
- (merchant_id, created_at) on actions for "actions today" budget checks

All timestamps are ISO8601 UTC strings with microsecond precision so
lexical comparison matches chronological order.
"""

POLICY_SCHEMA_SQL = """
-- One automation policy row per merchant
CREATE TABLE IF NOT EXISTS automation_settings (
    merchant_id TEXT PRIMARY KEY,
    global_autopilot_enabled INTEGER NOT NULL DEFAULT 1,  -- Master switch; 0 routes all to approval
    autopilot_mode TEXT NOT NULL DEFAULT 'safe',          -- safe, balanced, aggressive
    dry_run_mode INTEGER NOT NULL DEFAULT 0,
    auto_publish_enabled INTEGER NOT NULL DEFAULT 0,
    max_daily_actions INTEGER NOT NULL DEFAULT 10,
    max_catalog_change_percent REAL NOT NULL DEFAULT 5,
    autonomous_credit_limit INTEGER NOT NULL DEFAULT 100,
    enabled_action_types TEXT NOT NULL DEFAULT '["optimize_seo"]',  -- JSON array
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT
);

-- Trigger rules; merchant_id NULL for global rules
CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id TEXT,
    scope TEXT NOT NULL DEFAULT 'merchant',  -- global, merchant
    name TEXT NOT NULL,
    description TEXT,
    condition TEXT NOT NULL,                 -- JSON condition tree
    action_type TEXT NOT NULL,
    entity_type TEXT NOT NULL DEFAULT 'product',
    priority INTEGER NOT NULL DEFAULT 50,    -- Higher runs first
    cooldown_seconds INTEGER NOT NULL DEFAULT 86400,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- Global rule names are unique so presets seed idempotently
CREATE UNIQUE INDEX IF NOT EXISTS idx_rules_global_name
ON rules(name) WHERE merchant_id IS NULL;

CREATE INDEX IF NOT EXISTS idx_rules_merchant
ON rules(merchant_id, enabled);

CREATE TRIGGER IF NOT EXISTS rules_updated_at
AFTER UPDATE ON rules
BEGIN
    UPDATE rules SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
END;
"""

ACTIONS_SCHEMA_SQL = """
-- Actions: the unit of work and the audit record
CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id TEXT NOT NULL,
    action_type TEXT NOT NULL,               -- optimize_seo, adjust_price, send_campaign, send_cart_recovery
    entity_type TEXT NOT NULL,               -- product, campaign, cart, customer
    entity_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',  -- pending, running, completed, failed, rolled_back, dry_run, cancelled
    decision_reason TEXT,
    rule_id INTEGER,                         -- NULL for manual actions
    payload TEXT NOT NULL,                   -- JSON payload variant
    result TEXT,                             -- JSON execution output / error detail
    estimated_impact TEXT,                   -- JSON
    actual_impact TEXT,                      -- JSON
    executed_by TEXT NOT NULL DEFAULT 'agent',  -- agent, user, scheduler
    dry_run INTEGER NOT NULL DEFAULT 0,
    published_to_shopify INTEGER NOT NULL DEFAULT 0,
    credit_cost INTEGER NOT NULL DEFAULT 1,
    recipient TEXT,                          -- Normalized email or phone for outreach types
    channel TEXT,                            -- email, sms
    created_at TEXT NOT NULL,                -- ISO8601 UTC
    completed_at TEXT,
    rolled_back_at TEXT,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (rule_id) REFERENCES rules(id)
);

-- Budget checks: count actions today per merchant
CREATE INDEX IF NOT EXISTS idx_actions_merchant_created
ON actions(merchant_id, created_at);

-- Cooldown checks: last firing of a rule against an entity
CREATE INDEX IF NOT EXISTS idx_actions_rule_entity
ON actions(rule_id, entity_id, created_at) WHERE rule_id IS NOT NULL;

-- Frequency caps: messages per recipient and channel
CREATE INDEX IF NOT EXISTS idx_actions_recipient
ON actions(merchant_id, recipient, channel, created_at) WHERE recipient IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_actions_status
ON actions(status);

CREATE TRIGGER IF NOT EXISTS actions_updated_at
AFTER UPDATE ON actions
BEGIN
    UPDATE actions SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
END;

-- Rules referenced by an action are soft-disabled, never deleted
CREATE TRIGGER IF NOT EXISTS rules_no_delete_when_referenced
BEFORE DELETE ON rules
WHEN EXISTS (SELECT 1 FROM actions WHERE rule_id = OLD.id)
BEGIN
    SELECT RAISE(ABORT, 'rule is referenced by an action; disable it instead');
END;

-- Pre-change snapshots (append-only)
CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id TEXT NOT NULL,
    action_id INTEGER NOT NULL,
    captured_state TEXT NOT NULL,            -- JSON blob of entity state before change
    reason TEXT,                             -- before_execution, before_publish, manual
    created_at TEXT NOT NULL,
    FOREIGN KEY (action_id) REFERENCES actions(id)
);

CREATE INDEX IF NOT EXISTS idx_snapshots_action
ON snapshots(action_id, created_at);

CREATE INDEX IF NOT EXISTS idx_snapshots_entity
ON snapshots(entity_id);

CREATE TRIGGER IF NOT EXISTS snapshots_no_update
BEFORE UPDATE ON snapshots
BEGIN
    SELECT RAISE(ABORT, 'snapshots are append-only');
END;

CREATE TRIGGER IF NOT EXISTS snapshots_no_delete
BEFORE DELETE ON snapshots
BEGIN
    SELECT RAISE(ABORT, 'snapshots are append-only');
END;
"""

APPROVALS_SCHEMA_SQL = """
-- Proposals awaiting human review
CREATE TABLE IF NOT EXISTS pending_approvals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id TEXT NOT NULL,
    action_type TEXT NOT NULL,
    entity_id TEXT,
    entity_type TEXT,
    recommended_action TEXT NOT NULL,        -- JSON payload to execute if approved
    ai_reasoning TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',  -- pending, approved, rejected
    priority TEXT NOT NULL DEFAULT 'medium', -- low, medium, high, urgent
    estimated_impact TEXT,                   -- JSON
    -- Normalized recipient data for the dedup indexes
    recipient_email TEXT,
    recipient_phone TEXT,
    channel TEXT,                            -- email, sms
    rule_id INTEGER,
    estimated_cost INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    reviewed_at TEXT,
    reviewed_by TEXT,
    executed_action_id INTEGER,              -- Action spawned on approve
    FOREIGN KEY (executed_action_id) REFERENCES actions(id)
);

CREATE INDEX IF NOT EXISTS idx_pending_approvals_merchant_status
ON pending_approvals(merchant_id, status);

-- At most one pending outreach per (merchant, type, email, channel)
CREATE UNIQUE INDEX IF NOT EXISTS idx_pending_approvals_email_dedup
ON pending_approvals(merchant_id, action_type, recipient_email, channel, status)
WHERE status = 'pending'
  AND action_type IN ('send_campaign', 'send_cart_recovery')
  AND recipient_email IS NOT NULL;

-- At most one pending outreach per (merchant, type, phone, channel)
CREATE UNIQUE INDEX IF NOT EXISTS idx_pending_approvals_sms_dedup
ON pending_approvals(merchant_id, action_type, recipient_phone, channel, status)
WHERE status = 'pending'
  AND action_type IN ('send_campaign', 'send_cart_recovery')
  AND recipient_email IS NULL
  AND recipient_phone IS NOT NULL;

-- At most one pending catalog change per (merchant, type, entity)
CREATE UNIQUE INDEX IF NOT EXISTS idx_pending_approvals_entity_dedup
ON pending_approvals(merchant_id, action_type, entity_id, status)
WHERE status = 'pending'
  AND action_type NOT IN ('send_campaign', 'send_cart_recovery')
  AND entity_id IS NOT NULL;
"""

AUDIT_SCHEMA_SQL = """
-- Audit log for lifecycle events
CREATE TABLE IF NOT EXISTS action_audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id TEXT,
    action_id INTEGER,                      -- NULL for approval/settings events
    approval_id INTEGER,
    event_type TEXT NOT NULL,
    event_data TEXT,                        -- JSON blob with event-specific details
    actor TEXT NOT NULL,                    -- agent, user, scheduler, system
    alert INTEGER NOT NULL DEFAULT 0,       -- 1 for user-visible alerts (rollback failures)
    timestamp TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_audit_action
ON action_audit_log(action_id);

CREATE INDEX IF NOT EXISTS idx_audit_type
ON action_audit_log(event_type);

CREATE INDEX IF NOT EXISTS idx_audit_alert
ON action_audit_log(merchant_id, timestamp) WHERE alert = 1;
"""

ALL_SCHEMAS = (
    POLICY_SCHEMA_SQL,
    ACTIONS_SCHEMA_SQL,
    APPROVALS_SCHEMA_SQL,
    AUDIT_SCHEMA_SQL,
)
