"""Tests for the audit log and its query interface"""

import json
import logging
from datetime import datetime, timedelta

from audit_log import AuditAction, setup_audit_file_logging
from database import atomic
from models import AuditLogEntry


def test_record_joins_the_callers_transaction(market):
    try:
        with atomic():
            market.audit.record(99, AuditAction.ESCROW_HELD, 'EscrowPayment', 1, {'reason': 'x'})
            raise RuntimeError('state change failed')
    except RuntimeError:
        pass

    assert AuditLogEntry.query.count() == 0

    with atomic():
        market.audit.record(99, AuditAction.ESCROW_HELD, 'EscrowPayment', 1, {'reason': 'x'})
    assert AuditLogEntry.query.count() == 1


def test_record_mirrors_to_audit_logger(market, caplog):
    with caplog.at_level(logging.INFO, logger='audit'):
        with atomic():
            market.audit.record(99, AuditAction.JOB_HIDDEN, 'Job', 5, {'reason': 'spam'})

    record = [r for r in caplog.records if r.name == 'audit'][-1]
    payload = json.loads(record.getMessage())
    assert payload == {
        'actor_id': 99,
        'action': 'JOB_HIDDEN',
        'entity_type': 'Job',
        'entity_id': '5',
        'metadata': {'reason': 'spam'}
    }


def test_query_filters_newest_first(market):
    with atomic():
        market.audit.record(99, AuditAction.JOB_HIDDEN, 'Job', 1)
        market.audit.record(98, AuditAction.JOB_UNHIDDEN, 'Job', 1)
        market.audit.record(99, AuditAction.ESCROW_HELD, 'EscrowPayment', 3)

    assert [e.action for e in market.audit.query(entity_type='Job', entity_id=1)] == ['JOB_UNHIDDEN', 'JOB_HIDDEN']
    assert [e.entity_type for e in market.audit.query(actor_id=99)] == ['EscrowPayment', 'Job']
    assert len(market.audit.query(limit=1)) == 1

    future = datetime.utcnow() + timedelta(hours=1)
    assert market.audit.query(since=future) == []
    assert len(market.audit.query(until=future)) == 3


def test_setup_audit_file_logging_writes_json_lines(tmp_path):
    audit_logger = setup_audit_file_logging(str(tmp_path))
    try:
        audit_logger.info(json.dumps({'action': 'ESCROW_RELEASED'}))
        for handler in audit_logger.handlers:
            handler.flush()

        line = (tmp_path / 'audit.log').read_text(encoding='utf-8').strip().splitlines()[-1]
        assert json.loads(line)['message'] == {'action': 'ESCROW_RELEASED'}
    finally:
        for handler in list(audit_logger.handlers):
            audit_logger.removeHandler(handler)
            handler.close()
