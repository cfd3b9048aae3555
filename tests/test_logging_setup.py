import pytest
import json
import logging
from unittest.mock import patch, MagicMock

from balance_collection.common.logging_setup import (
    StructuredJsonFormatter,
    StructuredLogger,
    get_logger,
    mask_key,
    setup_logging,
    log_summary
)


def test_structured_json_formatter():
    """Test JSON formatter produces correct structured output"""
    formatter = StructuredJsonFormatter()

    record = logging.LogRecord(
        name='test_logger',
        level=logging.INFO,
        pathname='test.py',
        lineno=10,
        msg='Test message',
        args=(),
        exc_info=None
    )

    record.component = 'tron_client'
    record.operation = 'query_balance'
    record.params_hash = 'abc123'
    record.status = 'completed'
    record.duration_ms = 100
    record.error = ''

    output = formatter.format(record)
    data = json.loads(output)

    assert 'ts' in data
    assert data['component'] == 'tron_client'
    assert data['operation'] == 'query_balance'
    assert data['params_hash'] == 'abc123'
    assert data['status'] == 'completed'
    assert data['duration_ms'] == 100
    assert data['level'] == 'INFO'
    assert data['message'] == 'Test message'
    assert 'error' not in data


def test_structured_json_formatter_with_exception():
    """Test JSON formatter with exception info"""
    formatter = StructuredJsonFormatter()

    try:
        raise ValueError("Test error")
    except ValueError:
        import sys
        exc_info = sys.exc_info()

    record = logging.LogRecord(
        name='test_logger',
        level=logging.ERROR,
        pathname='test.py',
        lineno=10,
        msg='Error occurred',
        args=(),
        exc_info=exc_info
    )

    data = json.loads(formatter.format(record))

    assert data['status'] == 'error'
    assert 'ValueError: Test error' in data['error']


def test_structured_logger():
    """Test StructuredLogger wrapper"""
    mock_logger = MagicMock()
    structured_logger = StructuredLogger(mock_logger)

    structured_logger.log_operation(
        operation='save_ledger',
        params={'path': '/tmp/apikey_stats.json'},
        status='completed',
        duration_ms=5,
        message='Usage ledger saved'
    )

    mock_logger.log.assert_called_once()
    level, message = mock_logger.log.call_args[0]
    assert level == logging.INFO
    assert message == 'Usage ledger saved'

    mock_logger.reset_mock()
    structured_logger.log_operation(
        operation='save_ledger',
        status='failed',
        error='disk full'
    )

    mock_logger.log.assert_called_once()
    assert mock_logger.log.call_args[0] == (logging.ERROR, 'save_ledger failed')


def test_structured_logger_params_hash():
    """Test that params are hashed so API keys are not exposed"""
    mock_logger = MagicMock()
    structured_logger = StructuredLogger(mock_logger)

    structured_logger.log_operation(
        operation='query_balance',
        params={'api_key': 'secret-key-123', 'address': 'TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t'},
        status='started'
    )

    extra = mock_logger.log.call_args[1]['extra']
    assert len(extra['params_hash']) == 8
    assert 'secret-key-123' not in str(extra)


def test_get_logger():
    logger = get_logger('test_module')

    assert isinstance(logger, StructuredLogger)
    assert hasattr(logger, 'log_operation')


@pytest.mark.parametrize("api_key,expected", [
    ("", ""),
    ("short", "*****"),
    ("12345678", "********"),
    ("1a2b3c4d-5e6f-7890-abcd-ef1234567890", "1a2b...7890"),
])
def test_mask_key(api_key, expected):
    assert mask_key(api_key) == expected


def test_setup_logging(tmp_path):
    """Test logging setup with handlers"""
    root = logging.getLogger()
    previous_handlers = list(root.handlers)
    previous_level = root.level
    for handler in previous_handlers:
        root.removeHandler(handler)

    audit_logger = logging.getLogger('audit')
    try:
        with patch('balance_collection.common.config.settings') as mock_settings:
            mock_settings.log_dir = str(tmp_path / 'logs')
            mock_settings.log_level = 'DEBUG'

            setup_logging()

            assert root.level == logging.DEBUG

            handler_types = [type(h).__name__ for h in root.handlers]
            assert 'StreamHandler' in handler_types
            assert 'TimedRotatingFileHandler' in handler_types

            assert audit_logger.level == logging.INFO
            assert audit_logger.propagate is False
            assert (tmp_path / 'logs' / 'audit.log').exists()
            assert any(p.name.startswith('balance_query_') for p in (tmp_path / 'logs').iterdir())

    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in list(audit_logger.handlers):
            audit_logger.removeHandler(handler)
            handler.close()
        for handler in previous_handlers:
            root.addHandler(handler)
        root.setLevel(previous_level)


def test_log_summary():
    """Test batch summary logging"""
    with patch('balance_collection.common.logging_setup.get_logger') as mock_get_logger:
        mock_logger = MagicMock()
        mock_get_logger.return_value = mock_logger

        log_summary(
            component='orchestrator',
            batch='completed',
            total=5,
            succeeded=4,
            failed=1,
            duration_seconds=2.5
        )

        mock_logger.log_operation.assert_called_once_with(
            operation='batch_summary',
            params={'batch': 'completed'},
            status='completed',
            duration_ms=2500,
            message='Queried 5 addresses in batch completed: 4 succeeded, 1 failed'
        )
