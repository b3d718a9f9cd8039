"""SQL constants for PostgresQueue."""

from __future__ import annotations

from sqlalchemy import text

SCHEMA_ADVISORY_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")

# Wake consumers on new or requeued messages: one channel per queue.
CREATE_NOTIFY_FUNCTION_SQL = text("""
CREATE OR REPLACE FUNCTION cadenza_notify_messages()
RETURNS trigger AS $$
BEGIN
    IF NEW.status = 'ready' AND (TG_OP = 'INSERT' OR OLD.status <> 'ready') THEN
        PERFORM pg_notify('cadenza_queue_' || NEW.queue_name, NEW.id::text);
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
""")

DROP_NOTIFY_TRIGGER_SQL = text("""
    DROP TRIGGER IF EXISTS cadenza_messages_notify_trigger ON cadenza_messages
""")

CREATE_NOTIFY_TRIGGER_SQL = text("""
    CREATE TRIGGER cadenza_messages_notify_trigger
        AFTER INSERT OR UPDATE ON cadenza_messages
        FOR EACH ROW
        EXECUTE FUNCTION cadenza_notify_messages()
""")


# ---------- Declaration ----------

DECLARE_QUEUE_SQL = text("""
    INSERT INTO cadenza_queues (name, persistent, created_at)
    VALUES (:queue, :persistent, now())
    ON CONFLICT (name) DO NOTHING
    RETURNING name
""")

DELETE_BINDINGS_SQL = text("""
    DELETE FROM cadenza_bindings
    WHERE queue_name = :queue AND exchange = :exchange
""")

INSERT_BINDING_SQL = text("""
    INSERT INTO cadenza_bindings (queue_name, exchange, pattern)
    VALUES (:queue, :exchange, :pattern)
    ON CONFLICT ON CONSTRAINT uq_cadenza_binding DO NOTHING
""")

SELECT_BINDINGS_SQL = text("""
    SELECT queue_name, pattern
    FROM cadenza_bindings
    WHERE exchange = :exchange
    ORDER BY id ASC
""")

# Queues with messages still in flight survive even when every heartbeat is stale.
DELETE_QUEUE_IF_UNUSED_SQL = text("""
    DELETE FROM cadenza_queues q
    WHERE q.name = :queue
      AND NOT q.persistent
      AND NOT EXISTS (
        SELECT 1 FROM cadenza_consumers c
        WHERE c.queue_name = q.name
          AND c.heartbeat_at > now() - make_interval(secs => CAST(:ttl AS DOUBLE PRECISION))
      )
      AND NOT EXISTS (
        SELECT 1 FROM cadenza_messages m
        WHERE m.queue_name = q.name
          AND m.status = 'unacked'
      )
    RETURNING q.name
""")


# ---------- Publish ----------

INSERT_MESSAGE_SQL = text("""
    INSERT INTO cadenza_messages
        (queue_name, exchange, routing_key, payload, content_type, headers, status, redelivered, published_at)
    VALUES
        (:queue, :exchange, :routing_key, :payload, :content_type, CAST(:headers AS JSONB), 'ready', FALSE, now())
    RETURNING id
""")


# ---------- Claim ----------
# Oldest first; SKIP LOCKED lets sibling consumers claim disjoint rows.

CLAIM_SQL = text("""
WITH next AS (
  SELECT id
  FROM cadenza_messages
  WHERE queue_name = :queue
    AND status = 'ready'
  ORDER BY id ASC
  FOR UPDATE SKIP LOCKED
  LIMIT :lim
)
UPDATE cadenza_messages m
SET status = 'unacked',
    consumer_tag = :consumer_tag,
    claimed_at = now()
FROM next
WHERE m.id = next.id
RETURNING m.id, m.exchange, m.routing_key, m.payload, m.content_type, m.headers, m.redelivered
""")

# acknowledge=False: delivery is the acknowledgement.
CLAIM_AND_DELETE_SQL = text("""
WITH next AS (
  SELECT id
  FROM cadenza_messages
  WHERE queue_name = :queue
    AND status = 'ready'
  ORDER BY id ASC
  FOR UPDATE SKIP LOCKED
  LIMIT :lim
)
DELETE FROM cadenza_messages m
USING next
WHERE m.id = next.id
RETURNING m.id, m.exchange, m.routing_key, m.payload, m.content_type, m.headers, m.redelivered
""")


# ---------- Settlement ----------

ACK_SQL = text("""
    DELETE FROM cadenza_messages
    WHERE id = :id AND consumer_tag = :consumer_tag
""")

REQUEUE_SQL = text("""
    UPDATE cadenza_messages
    SET status = 'ready',
        redelivered = TRUE,
        consumer_tag = NULL,
        claimed_at = NULL
    WHERE id = :id AND consumer_tag = :consumer_tag AND status = 'unacked'
""")

REQUEUE_ALL_UNACKED_SQL = text("""
    UPDATE cadenza_messages
    SET status = 'ready',
        redelivered = TRUE,
        consumer_tag = NULL,
        claimed_at = NULL
    WHERE consumer_tag = :consumer_tag AND status = 'unacked'
    RETURNING id
""")

TAKE_FOR_DEAD_LETTER_SQL = text("""
    DELETE FROM cadenza_messages
    WHERE id = :id AND consumer_tag = :consumer_tag
    RETURNING queue_name, exchange, routing_key, payload, content_type, headers
""")


# ---------- Metrics ----------

COUNT_READY_SQL = text("""
    SELECT COUNT(*) FROM cadenza_messages
    WHERE queue_name = :queue AND status = 'ready'
""")

COUNT_CONSUMERS_SQL = text("""
    SELECT COUNT(*) FROM cadenza_consumers
    WHERE queue_name = :queue
      AND heartbeat_at > now() - make_interval(secs => CAST(:ttl AS DOUBLE PRECISION))
""")


# ---------- Consumers ----------

UPSERT_CONSUMER_SQL = text("""
    INSERT INTO cadenza_consumers (consumer_tag, queue_name, hostname, pid, heartbeat_at)
    VALUES (:consumer_tag, :queue, :hostname, :pid, now())
    ON CONFLICT (consumer_tag) DO UPDATE
    SET heartbeat_at = now()
""")

DELETE_CONSUMER_SQL = text("""
    DELETE FROM cadenza_consumers
    WHERE consumer_tag = :consumer_tag
""")
