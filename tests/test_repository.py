"""Blocking repository test cases."""
import pytest
from sqlalchemy.orm import selectinload
from apps.starwars.models import Side, User
from framework.exceptions.errors import EntityNotFoundError, MultipleResultsError, PreconditionError
from framework.repository import ChangeKind, Query, Repository


def user(name, side_id, surname="Skywalker"):
    return User(name=name, surname=surname, side_id=side_id)


class TestInsert:
    """Test staging inserts."""

    def test_insert_then_save_makes_all_visible(self, uow, sides):
        repo = uow.get_repository(User)
        users = [user("Luke", sides["Light"]), user("Leia", sides["Light"]), user("Vader", sides["Dark"])]

        repo.insert(users)
        applied = uow.save_changes()

        assert applied == 3
        names = {u.name for u in repo.get_list()}
        assert names == {"Luke", "Leia", "Vader"}
        assert all(u.id is not None for u in users)

    def test_insert_only_stages(self, uow, sides, committed_count):
        repo = uow.get_repository(User)
        repo.insert(user("Luke", sides["Light"]))

        assert len(uow.changes) == 1
        assert not uow.session.new
        assert committed_count(User) == 0

    def test_insert_single_entity(self, uow, committed_count):
        uow.get_repository(Side).insert(Side(name="Grey"))
        uow.save_changes()

        assert committed_count(Side, Side.name == "Grey") == 1

    def test_insert_wrong_type_rejected(self, uow):
        with pytest.raises(PreconditionError):
            uow.get_repository(User).insert(Side(name="Light"))
        assert len(uow.changes) == 0

    def test_insert_none_rejected(self, uow):
        with pytest.raises(PreconditionError):
            uow.get_repository(User).insert(None)

    def test_invalid_entity_in_list_stages_nothing(self, uow, sides):
        with pytest.raises(PreconditionError):
            uow.get_repository(User).insert([user("Luke", sides["Light"]), None])
        assert len(uow.changes) == 0


class TestQueries:
    """Test get_queryable, get_list, get_single and helpers."""

    def test_light_dark_scenario(self, uow):
        repo = uow.get_repository(Side)
        repo.insert([Side(name="Light"), Side(name="Dark")])
        uow.save_changes()

        result = repo.get_list(filter=Side.name == "Light")

        assert len(result) == 1
        assert result[0].name == "Light"

    def test_get_single_zero_and_many(self, uow, sides):
        repo = uow.get_repository(User)
        repo.insert([user("Han", sides["Light"], "Solo"), user("Han", sides["Light"], "Solo")])
        uow.save_changes()

        assert repo.get_single(User.name == "Chewbacca") is None
        with pytest.raises(MultipleResultsError):
            repo.get_single(User.name == "Han")

    def test_get_single_one(self, uow, sides):
        side = uow.get_repository(Side).get_single(Side.name == "Dark")
        assert side.id == sides["Dark"]

    def test_get_single_requires_filter(self, uow):
        with pytest.raises(PreconditionError):
            uow.get_repository(Side).get_single(None)

    def test_queryable_is_lazy(self, uow, sides):
        repo = uow.get_repository(User)
        query = repo.get_queryable(filter=User.name == "Yoda")
        assert isinstance(query, Query)

        repo.insert(user("Yoda", sides["Light"], "Unknown"))
        uow.save_changes()

        assert [u.name for u in query] == ["Yoda"]
        # restartable: each enumeration runs the statement again
        assert len(query.all()) == 1

    def test_queryable_composes(self, uow, sides):
        repo = uow.get_repository(User)
        repo.insert([user(name, sides["Light"]) for name in ("C", "A", "B")])
        uow.save_changes()

        query = repo.get_queryable(order_by=User.name).limit(2)
        assert [u.name for u in query] == ["A", "B"]
        assert query.first().name == "A"

    def test_order_by_callable(self, uow, sides):
        repo = uow.get_repository(User)
        repo.insert([user("Ben", sides["Light"]), user("Ann", sides["Light"]), user("Ann", sides["Dark"])])
        uow.save_changes()

        ordered = repo.get_list(order_by=lambda s: s.order_by(User.name).order_by(User.id.desc()))

        assert [(u.name, u.side_id) for u in ordered] == [
            ("Ann", sides["Dark"]),
            ("Ann", sides["Light"]),
            ("Ben", sides["Light"]),
        ]

    def test_filter_list(self, uow, sides):
        repo = uow.get_repository(User)
        repo.insert([user("Luke", sides["Light"]), user("Luke", sides["Dark"])])
        uow.save_changes()

        result = repo.get_list(filter=[User.name == "Luke", User.side_id == sides["Dark"]])
        assert len(result) == 1

    def test_include_loads_relationship(self, uow, sides):
        repo = uow.get_repository(User)
        repo.insert(user("Luke", sides["Light"]))
        uow.save_changes()

        (luke,) = repo.get_list(include=selectinload(User.side), is_read_only=True)

        # detached: the relationship is only readable because it was eager loaded
        assert luke.side.name == "Light"

    def test_count_exists_get_by_id(self, uow, sides):
        repo = uow.get_repository(Side)

        assert repo.count() == 2
        assert repo.count(Side.name == "Light") == 1
        assert repo.exists(Side.name == "Dark")
        assert not repo.exists(Side.name == "Grey")
        assert repo.get_by_id(sides["Light"]).name == "Light"
        assert repo.get_by_id(9999) is None


class TestReadOnly:
    """Test untracked reads."""

    def test_read_only_results_are_not_tracked(self, uow, sides):
        repo = uow.get_repository(Side)
        rows = repo.get_list(is_read_only=True)

        assert rows
        assert all(row not in uow.session for row in rows)

    def test_mutating_read_only_results_persists_nothing(self, uow, sides, committed_count):
        repo = uow.get_repository(Side)
        for side in repo.get_list(is_read_only=True):
            side.name = "Changed"
        uow.save_changes()

        assert committed_count(Side, Side.name == "Changed") == 0

    def test_read_only_get_by_id(self, uow, sides):
        side = uow.get_repository(Side).get_by_id(sides["Dark"], is_read_only=True)
        assert side.name == "Dark"
        assert side not in uow.session


class TestUpdateDelete:
    """Test staging updates and deletes."""

    def test_update_tracked_entity(self, uow, sides, committed_count):
        repo = uow.get_repository(Side)
        side = repo.get_by_id(sides["Light"])
        side.name = "Bright"
        repo.update(side)
        uow.save_changes()

        assert committed_count(Side, Side.name == "Bright") == 1

    def test_update_detached_entity_writes_full_row(self, uow, sides, committed_count):
        repo = uow.get_repository(Side)
        repo.update(Side(id=sides["Dark"], name="Sith"))
        uow.save_changes()

        assert committed_count(Side, Side.name == "Sith") == 1
        assert committed_count(Side, Side.name == "Dark") == 0

    def test_update_without_key_rejected(self, uow):
        with pytest.raises(PreconditionError):
            uow.get_repository(Side).update(Side(name="Nobody"))

    def test_update_missing_row_fails_on_save_and_keeps_log(self, uow, sides):
        repo = uow.get_repository(Side)
        repo.update(Side(id=424242, name="Ghost"))

        with pytest.raises(EntityNotFoundError):
            uow.save_changes()
        assert len(uow.changes) == 1

    def test_delete_tracked_entity(self, uow, sides, committed_count):
        repo = uow.get_repository(User)
        repo.insert(user("Jar Jar", sides["Light"], "Binks"))
        uow.save_changes()

        jar_jar = repo.get_single(User.name == "Jar Jar")
        repo.delete(jar_jar)
        uow.save_changes()

        assert committed_count(User) == 0

    def test_delete_detached_entity_by_key(self, uow, sides, committed_count):
        uow.get_repository(Side).delete(Side(id=sides["Dark"], name="Dark"))
        uow.save_changes()

        assert committed_count(Side) == 1

    def test_delete_of_staged_insert_unstages(self, uow, sides, committed_count):
        repo = uow.get_repository(User)
        pending = user("Temp", sides["Light"])
        repo.insert(pending)
        repo.delete(pending)

        assert uow.save_changes() == 0
        assert committed_count(User) == 0

    def test_delete_of_staged_insert_with_assigned_key_unstages(self, uow, sides, committed_count):
        repo = uow.get_repository(Side)
        pending = Side(id=50, name="Grey")
        repo.insert(pending)
        repo.delete(pending)
        repo.insert(Side(name="Neutral"))

        assert uow.save_changes() == 1
        assert committed_count(Side, Side.id == 50) == 0
        assert committed_count(Side, Side.name == "Neutral") == 1

    def test_delete_unstaged_entity_without_key_rejected(self, uow, sides):
        with pytest.raises(PreconditionError):
            uow.get_repository(User).delete(user("Nobody", sides["Light"]))

    def test_staged_kinds(self, uow, sides):
        repo = uow.get_repository(Side)
        light = repo.get_by_id(sides["Light"])
        repo.update(light)
        assert uow.changes.state_of(light) is ChangeKind.MODIFIED
        repo.delete(light)
        assert uow.changes.state_of(light) is ChangeKind.REMOVED


class TestConstruction:
    """Test repository preconditions."""

    def test_requires_session(self):
        with pytest.raises(PreconditionError):
            Repository(None, Side)

    def test_requires_entity_type(self, uow):
        with pytest.raises(PreconditionError):
            Repository(uow.session, dict)
