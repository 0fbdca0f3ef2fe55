from childcare_booking.domain.errors import TransactionTimeoutError
from childcare_booking.infrastructure.transactions import SqlAlchemyErrorClassifier
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError


class DriverError(Exception):
    def __init__(self, *args: object, sqlstate: str | None = None) -> None:
        super().__init__(*args)
        self.sqlstate = sqlstate


classifier = SqlAlchemyErrorClassifier()


def test_mysql_deadlock_is_a_conflict() -> None:
    exc = OperationalError("UPDATE slots", {}, DriverError(1213, "Deadlock found when trying to get lock"))
    assert classifier.is_conflict(exc)
    assert not classifier.is_transient(exc)


def test_postgres_serialization_failure_is_a_conflict() -> None:
    exc = DBAPIError("UPDATE slots", {}, DriverError("could not serialize access", sqlstate="40001"))
    assert classifier.is_conflict(exc)


def test_conflict_found_through_exception_chain() -> None:
    cause = OperationalError("UPDATE slots", {}, DriverError(1205, "Lock wait timeout exceeded"))
    try:
        try:
            raise cause
        except OperationalError as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert classifier.is_conflict(outer)


def test_lost_connection_is_transient() -> None:
    exc = OperationalError("SELECT 1", {}, DriverError(2013, "Lost connection to MySQL server"))
    assert not classifier.is_conflict(exc)
    assert classifier.is_transient(exc)
    assert classifier.is_transient(TransactionTimeoutError("slow"))


def test_integrity_error_is_neither() -> None:
    exc = IntegrityError("INSERT INTO slots", {}, DriverError(1062, "Duplicate entry"))
    assert not classifier.is_conflict(exc)
    assert not classifier.is_transient(exc)
