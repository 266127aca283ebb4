"""Blocking unit of work test cases."""
import pytest
from apps.starwars.models import Side, User
from framework.exceptions.errors import (
    EntityNotFoundError,
    NoActiveTransactionError,
    PreconditionError,
    TransactionAlreadyActiveError,
    UnitOfWorkDisposedError,
)
from framework.repository import IsolationLevel, Repository, TransactionState, UnitOfWork


class SideRepository(Repository[Side]):
    """Custom repository used through the registry."""

    def __init__(self, session):
        super().__init__(session, Side)

    def get_by_name(self, name: str):
        return self.get_single(Side.name == name)


class TestTransactionStateMachine:
    """Test begin/commit/rollback transitions."""

    def test_begin_commit(self, uow):
        assert uow.state is TransactionState.IDLE
        uow.begin_transaction()
        assert uow.state is TransactionState.IN_TRANSACTION
        uow.commit_transaction()
        assert uow.state is TransactionState.IDLE

    def test_begin_twice_fails_and_first_stays_active(self, uow, sides, committed_count):
        uow.begin_transaction()
        with pytest.raises(TransactionAlreadyActiveError):
            uow.begin_transaction()

        assert uow.in_transaction
        uow.get_repository(Side).insert(Side(name="Grey"))
        uow.save_changes()
        uow.commit_transaction()
        assert committed_count(Side, Side.name == "Grey") == 1

    def test_commit_when_idle_fails(self, uow):
        with pytest.raises(NoActiveTransactionError):
            uow.commit_transaction()

    def test_rollback_when_idle_fails(self, uow):
        with pytest.raises(NoActiveTransactionError):
            uow.rollback_transaction()

    def test_rollback_undoes_multiple_saves(self, uow, sides, committed_count):
        repo = uow.get_repository(User)
        uow.begin_transaction()
        repo.insert(User(name="A", surname="A", side_id=sides["Light"]))
        uow.save_changes()
        repo.insert(User(name="B", surname="B", side_id=sides["Light"]))
        uow.save_changes()
        uow.rollback_transaction()

        assert uow.state is TransactionState.IDLE
        assert committed_count(User) == 0
        assert repo.count() == 0

    def test_saves_inside_transaction_are_visible_only_to_the_uow(self, uow, sides, committed_count):
        repo = uow.get_repository(User)
        uow.begin_transaction()
        repo.insert(User(name="Rey", surname="Skywalker", side_id=sides["Light"]))
        uow.save_changes()

        assert repo.count(User.name == "Rey") == 1
        assert committed_count(User) == 0

        uow.commit_transaction()
        assert committed_count(User) == 1

    def test_rollback_discards_staged_changes(self, uow, sides):
        uow.begin_transaction()
        uow.get_repository(Side).insert(Side(name="Grey"))
        uow.rollback_transaction()

        assert len(uow.changes) == 0

    def test_begin_after_reads(self, uow, sides, committed_count):
        repo = uow.get_repository(Side)
        assert repo.count() == 2

        uow.begin_transaction()
        repo.insert(Side(name="Grey"))
        uow.save_changes()
        uow.commit_transaction()

        assert committed_count(Side) == 3

    def test_begin_adopts_implicit_transaction_with_pending_changes(self, uow, sides, committed_count):
        light = uow.get_repository(Side).get_by_id(sides["Light"])
        light.name = "Renamed"

        uow.begin_transaction()
        assert uow.in_transaction
        uow.commit_transaction()

        assert committed_count(Side, Side.name == "Renamed") == 1

    def test_explicit_isolation_level(self, uow):
        uow.begin_transaction(IsolationLevel.READ_UNCOMMITTED)
        assert uow.in_transaction
        uow.rollback_transaction()

    def test_unknown_isolation_level(self, uow):
        with pytest.raises(PreconditionError):
            uow.begin_transaction("CHAOS")
        assert uow.state is TransactionState.IDLE


class TestTransactionContext:
    """Test the transaction() context manager."""

    def test_commits_on_success(self, uow, committed_count):
        with uow.transaction():
            uow.get_repository(Side).insert(Side(name="Grey"))
            uow.save_changes()

        assert uow.state is TransactionState.IDLE
        assert committed_count(Side) == 1

    def test_rolls_back_on_error(self, uow, committed_count):
        with pytest.raises(RuntimeError):
            with uow.transaction():
                uow.get_repository(Side).insert(Side(name="Grey"))
                uow.save_changes()
                raise RuntimeError("boom")

        assert uow.state is TransactionState.IDLE
        assert committed_count(Side) == 0


class TestSaveChanges:
    """Test save_changes modes."""

    def test_idle_save_commits(self, uow, committed_count):
        uow.get_repository(Side).insert(Side(name="Grey"))
        assert uow.save_changes() == 1
        assert committed_count(Side) == 1
        assert len(uow.changes) == 0

    def test_inner_transaction_when_idle(self, uow, committed_count):
        uow.get_repository(Side).insert(Side(name="Grey"))
        uow.save_changes(create_inner_transaction=True)

        assert uow.state is TransactionState.IDLE
        assert committed_count(Side) == 1

    def test_inner_transaction_inside_explicit_transaction_is_forbidden(self, uow):
        uow.begin_transaction()
        uow.get_repository(Side).insert(Side(name="Grey"))

        with pytest.raises(TransactionAlreadyActiveError):
            uow.save_changes(create_inner_transaction=True)

        assert uow.in_transaction
        assert len(uow.changes) == 1
        uow.rollback_transaction()

    def test_failed_inner_save_rolls_back_and_keeps_log(self, uow, sides, committed_count):
        uow.get_repository(Side).insert(Side(name="Grey"))
        uow.get_repository(Side).update(Side(id=9999, name="Ghost"))

        with pytest.raises(EntityNotFoundError):
            uow.save_changes(create_inner_transaction=True)

        assert uow.state is TransactionState.IDLE
        assert len(uow.changes) == 2
        assert committed_count(Side, Side.name == "Grey") == 0

    def test_save_with_nothing_staged(self, uow):
        assert uow.save_changes() == 0


class TestRepositories:
    """Test get_repository and the custom repository registry."""

    def test_repository_is_cached(self, uow):
        assert uow.get_repository(Side) is uow.get_repository(Side)
        assert uow.get_repository(Side) is not uow.get_repository(User)

    def test_repositories_share_the_log(self, uow, sides):
        uow.get_repository(Side).insert(Side(name="Grey"))
        uow.get_repository(User).insert(User(name="Finn", surname="FN-2187", side_id=sides["Light"]))

        assert uow.get_repository(Side).changes is uow.get_repository(User).changes
        assert len(uow.changes) == 2

    def test_non_entity_returns_none(self, uow):
        assert uow.get_repository(str) is None

    def test_custom_repository_from_registry(self, session_factory, sides):
        with UnitOfWork.from_factory(
            session_factory, repositories={Side: SideRepository}, default_isolation_level="SERIALIZABLE"
        ) as unit:
            repo = unit.get_repository(Side)
            assert isinstance(repo, SideRepository)
            assert repo.get_by_name("Light").id == sides["Light"]

    def test_registry_rejects_non_repository(self, session_factory):
        with pytest.raises(PreconditionError):
            UnitOfWork.from_factory(session_factory, repositories={Side: object})

    def test_registry_rejects_non_entity(self, session_factory):
        with pytest.raises(PreconditionError):
            UnitOfWork.from_factory(session_factory, repositories={str: SideRepository})


class TestLifetime:
    """Test construction and disposal."""

    def test_requires_session(self):
        with pytest.raises(PreconditionError):
            UnitOfWork(session=None)

    def test_from_session(self, session_factory):
        session = session_factory()
        unit = UnitOfWork.from_session(session)
        assert unit.session is session
        unit.dispose()

    def test_dispose_rolls_back_live_transaction(self, session_factory, committed_count):
        unit = UnitOfWork.from_factory(session_factory, default_isolation_level="SERIALIZABLE")
        unit.begin_transaction()
        unit.get_repository(Side).insert(Side(name="Grey"))
        unit.save_changes()
        unit.dispose()

        assert unit.disposed
        assert committed_count(Side) == 0

    def test_dispose_is_idempotent_and_final(self, uow):
        uow.dispose()
        uow.dispose()

        with pytest.raises(UnitOfWorkDisposedError):
            uow.get_repository(Side)
        with pytest.raises(UnitOfWorkDisposedError):
            uow.begin_transaction()
        with pytest.raises(UnitOfWorkDisposedError):
            uow.save_changes()

    def test_context_manager_disposes(self, session_factory):
        with UnitOfWork.from_factory(session_factory) as unit:
            pass
        assert unit.disposed


class TestIsolationLevel:
    """Test IsolationLevel parsing."""

    @pytest.mark.parametrize("value", ["READ_COMMITTED", "read committed", "Read-Committed", IsolationLevel.READ_COMMITTED])
    def test_parse(self, value):
        assert IsolationLevel.parse(value) is IsolationLevel.READ_COMMITTED

    def test_default_from_settings(self, session_factory):
        from framework.config import settings
        with UnitOfWork.from_factory(session_factory) as unit:
            assert unit.default_isolation_level is IsolationLevel.parse(settings.DEFAULT_ISOLATION_LEVEL)
