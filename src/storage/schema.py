"""DDL for the alerting tables.

``sensors`` mirrors only the columns this service reads; the inventory
side owns the rest of the sensor record. Everything keyed by a sensor
cascades when the sensor is deleted.
"""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sensors (
    sensor_id INTEGER PRIMARY KEY,
    company_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    sensor_type TEXT NOT NULL,
    location TEXT,
    active BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE INDEX IF NOT EXISTS idx_sensors_company
    ON sensors(company_id);

-- One threshold per (sensor, metric kind)
CREATE TABLE IF NOT EXISTS sensor_thresholds (
    sensor_id INTEGER NOT NULL REFERENCES sensors(sensor_id) ON DELETE CASCADE,
    metric_kind TEXT NOT NULL,
    min_value DOUBLE PRECISION,
    max_value DOUBLE PRECISION,
    severity_default TEXT NOT NULL DEFAULT 'MEDIA',
    alert_message TEXT,
    critical_message TEXT,
    verification_interval_minutes INTEGER NOT NULL DEFAULT 5,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    notify_email BOOLEAN NOT NULL DEFAULT TRUE,
    notify_sms BOOLEAN NOT NULL DEFAULT FALSE,
    notify_realtime BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (sensor_id, metric_kind),
    CHECK (min_value IS NULL OR max_value IS NULL OR min_value < max_value)
);

-- Recipients, escalation levels, schedule override, attempt ceiling
CREATE TABLE IF NOT EXISTS sensor_alert_configs (
    sensor_id INTEGER PRIMARY KEY REFERENCES sensors(sensor_id) ON DELETE CASCADE,
    config JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Company-wide quiet-hours window
CREATE TABLE IF NOT EXISTS company_schedules (
    company_id INTEGER PRIMARY KEY,
    schedule JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sensor_alerts (
    alert_id TEXT PRIMARY KEY,
    sensor_id INTEGER NOT NULL REFERENCES sensors(sensor_id) ON DELETE CASCADE,
    company_id INTEGER,
    metric_kind TEXT NOT NULL,
    triggering_value DOUBLE PRECISION NOT NULL,
    unit TEXT NOT NULL DEFAULT '',
    severity TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'ACTIVA',
    escalation_level INTEGER NOT NULL DEFAULT 0,
    message TEXT NOT NULL DEFAULT '',
    breach_count INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_breach_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    level_entered_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    resolved_at TIMESTAMPTZ,
    resolution_comment TEXT,
    recipients_notified TEXT[] NOT NULL DEFAULT '{}',
    attempt_counters JSONB NOT NULL DEFAULT '{}'
);

-- At most one open alert per (sensor, metric kind)
CREATE UNIQUE INDEX IF NOT EXISTS uq_sensor_alerts_open_pair
    ON sensor_alerts(sensor_id, metric_kind)
    WHERE state <> 'RESUELTA';

CREATE INDEX IF NOT EXISTS idx_sensor_alerts_state
    ON sensor_alerts(state);
CREATE INDEX IF NOT EXISTS idx_sensor_alerts_company
    ON sensor_alerts(company_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_sensor_alerts_sensor_created
    ON sensor_alerts(sensor_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_sensor_alerts_escalation_scan
    ON sensor_alerts(level_entered_at, alert_id)
    WHERE state IN ('ACTIVA', 'EN_ESCALAMIENTO');

-- Delivery log: one row per claimed attempt slot of a chain
CREATE TABLE IF NOT EXISTS notification_attempts (
    attempt_id TEXT PRIMARY KEY,
    alert_id TEXT NOT NULL REFERENCES sensor_alerts(alert_id) ON DELETE CASCADE,
    channel TEXT NOT NULL,
    recipient TEXT NOT NULL,
    escalation_level INTEGER NOT NULL,
    attempt_number INTEGER NOT NULL,
    success BOOLEAN NOT NULL,
    error TEXT,
    manual BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT uq_notification_attempts_slot
        UNIQUE (alert_id, channel, recipient, attempt_number)
);

-- Notifications held back by a quiet-hours window
CREATE TABLE IF NOT EXISTS deferred_notifications (
    deferred_id BIGSERIAL PRIMARY KEY,
    alert_id TEXT NOT NULL REFERENCES sensor_alerts(alert_id) ON DELETE CASCADE,
    escalation_level INTEGER NOT NULL,
    channels TEXT[] NOT NULL,
    due_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_deferred_notifications_due
    ON deferred_notifications(due_at);
"""
