"""
Unit tests for the ordered transactional writer
"""

import itertools

import pymysql.err
import pytest

from shadowrepl.exceptions import ConnectionError, PermanentWriteError, TransientWriteError
from shadowrepl.models.events import ChangeEvent, Mutation, OperationKind, OrderingToken, ShadowRecord
from shadowrepl.models.writes import WriteStatus
from shadowrepl.services.shadow_table_service import ShadowTableManager
from shadowrepl.services.transaction_writer import (
    OrderingGuard,
    TransactionalWriter,
    classify_write_error,
    error_code_of
)


def make_mutation(key=1, token=1, operation=OperationKind.INSERT, **values):
    token = token if isinstance(token, OrderingToken) else OrderingToken(token)
    row = {"id": key}
    row.update(values)
    event = ChangeEvent(table="cart", values=dict(row), operation=operation, token=token)
    return Mutation(table="cart", operation=operation, key=(("id", key),), values=row, token=token, event=event)


@pytest.fixture
def writer(fake_destination, metrics_service):
    shadow_tables = ShadowTableManager(fake_destination, "shadow_")
    return TransactionalWriter(fake_destination, shadow_tables, metrics_service=metrics_service)


class TestOrderingGuard:
    """Test OrderingGuard"""

    def test_no_shadow_record(self):
        assert OrderingGuard().should_apply(OrderingToken(1), None)

    def test_strictly_newer_only(self):
        stored = ShadowRecord(key=(1,), token=OrderingToken(5, "f", 10))
        guard = OrderingGuard()
        assert guard.should_apply(OrderingToken(5, "f", 11), stored)
        assert not guard.should_apply(OrderingToken(5, "f", 10), stored)
        assert not guard.should_apply(OrderingToken(4, "z", 99), stored)


class TestTransactionalWriter:
    """Test ordered writes against the in-memory destination"""

    def test_first_write_applied(self, writer, fake_destination):
        result = writer.write(make_mutation(token=3, name="a", qty=1))

        assert result.status == WriteStatus.APPLIED
        assert fake_destination.row("cart", 1) == {"id": 1, "name": "a", "qty": 1}
        shadow = fake_destination.shadow_row("cart", 1)
        assert shadow["processed_commit_ts"] == 3
        assert shadow["last_operation"] == "insert"

    def test_statement_order(self, writer, fake_destination):
        writer.write(make_mutation(token=1, name="a"))
        writer.write(make_mutation(token=2, name="b"))

        first, second = fake_destination.statements[:3], fake_destination.statements[3:]
        assert first[0].startswith("SELECT") and first[0].endswith("FOR UPDATE")
        assert first[1].startswith("INSERT INTO `shadow_cart`")
        assert "ON DUPLICATE KEY UPDATE" not in first[1]
        assert first[2].startswith("INSERT INTO `cart`")
        assert second[0].startswith("SELECT") and second[0].endswith("FOR UPDATE")
        assert second[1].startswith("INSERT INTO `cart`")
        assert second[2].startswith("INSERT INTO `shadow_cart`")
        assert "ON DUPLICATE KEY UPDATE" in second[2]

    def test_redelivery_is_discarded(self, writer, fake_destination):
        assert writer.write(make_mutation(token=3, name="a")).is_applied
        result = writer.write(make_mutation(token=3, name="a"))

        assert result.status == WriteStatus.DISCARDED
        assert fake_destination.row("cart", 1)["name"] == "a"

    def test_stale_change_is_discarded(self, writer, fake_destination):
        writer.write(make_mutation(token=7, name="new"))
        result = writer.write(make_mutation(token=5, name="old"))

        assert result.is_discarded
        assert fake_destination.row("cart", 1)["name"] == "new"
        assert fake_destination.shadow_row("cart", 1)["processed_commit_ts"] == 7

    @pytest.mark.parametrize("order", list(itertools.permutations([0, 1, 2])))
    def test_any_arrival_order_converges(self, writer, fake_destination, order):
        mutations = [
            make_mutation(token=1, name="first", qty=1),
            make_mutation(token=2, name="second", qty=2),
            make_mutation(token=3, name="third", qty=3),
        ]
        for index in order:
            writer.write(mutations[index])

        assert fake_destination.row("cart", 1) == {"id": 1, "name": "third", "qty": 3}
        assert fake_destination.shadow_row("cart", 1)["processed_commit_ts"] == 3

    def test_log_position_breaks_timestamp_ties(self, writer, fake_destination):
        writer.write(make_mutation(token=OrderingToken(5, "mysql-bin.000001", 200), name="later"))
        result = writer.write(make_mutation(token=OrderingToken(5, "mysql-bin.000001", 100), name="earlier"))

        assert result.is_discarded
        assert fake_destination.row("cart", 1)["name"] == "later"

    def test_delete_keeps_shadow_record(self, writer, fake_destination):
        writer.write(make_mutation(token=1, name="a"))
        result = writer.write(make_mutation(token=2, operation=OperationKind.DELETE))

        assert result.is_applied
        assert fake_destination.row("cart", 1) is None
        shadow = fake_destination.shadow_row("cart", 1)
        assert shadow["processed_commit_ts"] == 2
        assert shadow["last_operation"] == "delete"

    def test_insert_older_than_delete_is_discarded(self, writer, fake_destination):
        writer.write(make_mutation(token=2, operation=OperationKind.DELETE))
        result = writer.write(make_mutation(token=1, name="resurrected"))

        assert result.is_discarded
        assert fake_destination.row("cart", 1) is None

    def test_failure_rolls_back(self, writer, fake_destination):
        writer.write(make_mutation(token=1, name="a"))
        fake_destination.fail_on("INSERT INTO `shadow_cart`",
                                 pymysql.err.OperationalError(1213, "Deadlock found"))
        result = writer.write(make_mutation(token=2, name="b"))

        assert result.status == WriteStatus.RETRYABLE_ERROR
        assert result.error_code == 1213
        assert fake_destination.row("cart", 1)["name"] == "a"
        assert fake_destination.shadow_row("cart", 1)["processed_commit_ts"] == 1
        assert fake_destination.rollbacks == 1

    def test_failed_first_write_leaves_no_shadow_record(self, writer, fake_destination):
        fake_destination.fail_on("INSERT INTO `cart`", pymysql.err.OperationalError(1205, "Lock wait timeout"))
        assert writer.write(make_mutation(token=1, name="a")).is_retryable

        assert fake_destination.row("cart", 1) is None
        assert fake_destination.shadow_row("cart", 1) is None
        assert writer.write(make_mutation(token=1, name="a")).is_applied

    def test_permanent_failure(self, writer, fake_destination):
        fake_destination.fail_on("INSERT INTO `cart`", pymysql.err.DataError(1406, "Data too long"))
        result = writer.write(make_mutation(token=1, name="x" * 10))

        assert result.status == WriteStatus.PERMANENT_ERROR
        assert not result.is_retryable
        assert "Data too long" in result.error

    def test_write_after_failure_succeeds(self, writer, fake_destination):
        fake_destination.fail_on("SELECT", pymysql.err.OperationalError(2013, "Lost connection"))
        assert writer.write(make_mutation(token=1, name="a")).is_retryable
        assert writer.write(make_mutation(token=1, name="a")).is_applied

    def test_write_duration_recorded(self, writer, metrics_service):
        writer.write(make_mutation(token=1, name="a"))
        assert "shadowrepl_write_duration_seconds" in metrics_service.get_metrics()


class TestConcurrentFirstWrites:
    """Two writers racing on a key that has no shadow record yet"""

    @pytest.fixture
    def shadow_tables(self, fake_destination):
        return ShadowTableManager(fake_destination, "shadow_")

    def interleaved_writer(self, fake_destination, shadow_tables, rival_mutation, results):
        """A writer whose rival commits between its shadow read and its first write"""
        rival = TransactionalWriter(fake_destination, shadow_tables)

        class RivalCommitsFirst(OrderingGuard):
            def should_apply(self, incoming, stored):
                if not results:
                    results.append(rival.write(rival_mutation))
                return super().should_apply(incoming, stored)

        return TransactionalWriter(fake_destination, shadow_tables, guard=RivalCommitsFirst())

    def test_older_loser_is_retried_and_then_discarded(self, fake_destination, shadow_tables):
        results = []
        writer = self.interleaved_writer(fake_destination, shadow_tables,
                                         make_mutation(token=7, name="newer"), results)

        result = writer.write(make_mutation(token=5, name="older"))

        assert results[0].is_applied
        assert result.status == WriteStatus.RETRYABLE_ERROR
        assert result.error_code == 1062
        assert fake_destination.row("cart", 1)["name"] == "newer"
        assert fake_destination.shadow_row("cart", 1)["processed_commit_ts"] == 7

        redelivered = TransactionalWriter(fake_destination, shadow_tables).write(
            make_mutation(token=5, name="older"))
        assert redelivered.is_discarded
        assert fake_destination.shadow_row("cart", 1)["processed_commit_ts"] == 7

    def test_newer_loser_is_retried_and_then_applied(self, fake_destination, shadow_tables):
        results = []
        writer = self.interleaved_writer(fake_destination, shadow_tables,
                                         make_mutation(token=5, name="older"), results)

        assert writer.write(make_mutation(token=7, name="newer")).is_retryable
        assert fake_destination.shadow_row("cart", 1)["processed_commit_ts"] == 5

        retried = TransactionalWriter(fake_destination, shadow_tables).write(
            make_mutation(token=7, name="newer"))
        assert retried.is_applied
        assert fake_destination.row("cart", 1)["name"] == "newer"
        assert fake_destination.shadow_row("cart", 1)["processed_commit_ts"] == 7

    def test_other_integrity_errors_stay_permanent(self, writer, fake_destination):
        fake_destination.fail_on("INSERT INTO `shadow_cart`",
                                 pymysql.err.IntegrityError(1048, "Column cannot be null"))
        result = writer.write(make_mutation(token=1, name="a"))

        assert result.status == WriteStatus.PERMANENT_ERROR
        assert result.error_code == 1048


class TestClassifyWriteError:
    """Test error classification"""

    @pytest.mark.parametrize("error", [
        pymysql.err.OperationalError(1213, "Deadlock found"),
        pymysql.err.OperationalError(1205, "Lock wait timeout exceeded"),
        pymysql.err.OperationalError(2006, "MySQL server has gone away"),
        pymysql.err.OperationalError(9999, "Unknown operational error"),
        pymysql.err.InterfaceError(0, ""),
        ConnectionError("no route to host"),
    ])
    def test_retryable(self, error):
        assert isinstance(classify_write_error(error), TransientWriteError)

    @pytest.mark.parametrize("error", [
        pymysql.err.IntegrityError(1062, "Duplicate entry"),
        pymysql.err.DataError(1406, "Data too long"),
        pymysql.err.ProgrammingError(1146, "Table doesn't exist"),
        pymysql.err.OperationalError(1054, "Unknown column"),
        ValueError("bad value"),
    ])
    def test_permanent(self, error):
        assert isinstance(classify_write_error(error), PermanentWriteError)

    def test_write_error_passes_through(self):
        error = TransientWriteError("later", 1213)
        assert classify_write_error(error) is error

    def test_error_code_of(self):
        assert error_code_of(pymysql.err.OperationalError(1213, "x")) == 1213
        assert error_code_of(ValueError("x")) is None
