"""Database schema DDL for the job record store."""

JOBS_TABLE_DDL = """
CREATE TABLE jobs (
  id                UUID PRIMARY KEY,
  tenant_id         TEXT,
  execution_type    TEXT NOT NULL,

  status            TEXT NOT NULL CHECK (status IN ('PENDING', 'RETRYING', 'SUCCEEDED', 'FAILED', 'DEAD')),
  message           JSONB NOT NULL,

  retry_count       INT NOT NULL DEFAULT 0,
  max_retries       INT NOT NULL DEFAULT 10,
  next_retry_at     TIMESTAMPTZ,
  last_error        TEXT,

  idempotency_key   TEXT,
  message_group_id  TEXT NOT NULL,
  external_ref      TEXT,

  created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at        TIMESTAMPTZ NOT NULL DEFAULT now(),

  CONSTRAINT jobs_next_retry_at_scheduled CHECK (
    (status IN ('PENDING', 'RETRYING')) = (next_retry_at IS NOT NULL)
  )
);

-- Due-job sweep
CREATE INDEX idx_jobs_due
ON jobs (next_retry_at)
WHERE status IN ('PENDING', 'RETRYING');

CREATE INDEX idx_jobs_status
ON jobs (status);

CREATE INDEX idx_jobs_tenant_status
ON jobs (tenant_id, status);

-- Producer and consumer deduplication lookups (not unique)
CREATE INDEX idx_jobs_tenant_idempotency_key
ON jobs (tenant_id, idempotency_key)
WHERE idempotency_key IS NOT NULL;
"""
