import pytest

from berryorm.adapters import BaseAdapter, PostgresAdapter, SQLiteAdapter
from berryorm.core.includes import Include, normalize_includes
from berryorm.errors import AssociationConfigurationError, EagerLoadingError, QueryError, UnsupportedFeatureError
from berryorm.registry import ModelRegistry
from berryorm.sql.builders import FindOptions, Link

from tests.models import define_projects, define_users_and_tasks, normalize, seed_users, selects


def _offline(adapter=None):
    registry = ModelRegistry(adapter=adapter or SQLiteAdapter())
    User, Task, SubTask = define_users_and_tasks(registry)
    return registry, User, Task, SubTask


def _sql(registry, model, **options) -> str:
    plan = registry.builder.build(model, FindOptions(**options))
    return normalize(registry.adapter.render(plan.statement))


def test_paths_and_required_defaults():
    registry, User, Task, SubTask = _offline()
    nodes = normalize_includes(User, [Include('tasks', include=[Include('sub_tasks', where={'title': 'x'})])])
    (tasks,) = nodes
    (subs,) = tasks.children
    assert (tasks.path, subs.path) == ('tasks', 'tasks->sub_tasks')
    assert subs.required is True
    # A required child makes its parent required unless said otherwise
    assert tasks.required is True
    optional = normalize_includes(User, [Include('tasks', required=False, include=[Include('sub_tasks', where={'title': 'x'})])])
    assert optional[0].required is False


def test_limited_to_many_include_becomes_separate():
    registry, User, Task, _ = _offline()
    (node,) = normalize_includes(User, [Include('tasks', limit=2, where={'title': 'x'})])
    assert node.separate is True
    assert node.required is False
    (joined,) = normalize_includes(Task, [Include('user', limit=1)])
    assert joined.separate is False


def test_include_by_model_and_dict():
    registry, User, Task, _ = _offline()
    assert normalize_includes(User, [Task])[0].alias == 'tasks'
    assert normalize_includes(User, [{'model': Task, 'as': 'tasks'}])[0].alias == 'tasks'
    assert normalize_includes(User, [{'association': User.association('tasks')}])[0].alias == 'tasks'


def test_undeclared_and_ambiguous_includes():
    registry, User, Task, SubTask = _offline()
    with pytest.raises(EagerLoadingError):
        normalize_includes(User, [SubTask])
    with pytest.raises(EagerLoadingError):
        normalize_includes(User, ['nothing'])
    with pytest.raises(EagerLoadingError):
        normalize_includes(User, [Task.association('user')])

    User.has_many(Task, alias='assigned', foreign_key='assignee_id')
    with pytest.raises(EagerLoadingError):
        normalize_includes(User, [Task])
    assert normalize_includes(User, [Include(Task, alias='assigned')])[0].alias == 'assigned'


def test_duplicate_alias_at_one_level():
    registry, User, _, _ = _offline()
    with pytest.raises(AssociationConfigurationError):
        normalize_includes(User, ['tasks', Include('tasks', where={'title': 'x'})])


def test_joined_include_labels_and_join_types():
    registry, User, _, _ = _offline()
    sql = _sql(registry, User, include=['tasks'])
    assert 'left outer join' in sql
    assert '"tasks.title"' in sql

    required = _sql(registry, User, include=[Include('tasks', where={'title': 'x'})])
    assert 'left outer join' not in required
    assert ' join ' in required


def test_required_child_under_optional_parent_is_nested():
    registry, User, _, _ = _offline()
    sql = _sql(registry, User, include=[Include('tasks', required=False, include=[Include('sub_tasks', where={'title': 'x'})])])
    assert 'left outer join (' in sql


def test_limit_with_to_many_join_uses_subquery():
    registry, User, _, _ = _offline()
    flat = registry.builder.build(User, FindOptions(include=['tasks']))
    assert flat.subquery is False
    plan = registry.builder.build(User, FindOptions(include=['tasks'], limit=5, order=['username']))
    assert plan.subquery is True
    sql = normalize(registry.adapter.render(plan.statement))
    assert 'from (select' in sql
    # To-one joins never multiply root rows
    registry2, _, Task, _ = _offline()
    assert registry2.builder.build(Task, FindOptions(include=['user'], limit=5)).subquery is False


def test_required_include_under_limit_becomes_exists():
    registry, User, _, _ = _offline()
    sql = _sql(registry, User, include=[Include('tasks', where={'title': 'x'})], limit=2)
    assert 'exists (select' in sql


def test_where_on_joined_include_column():
    registry, User, _, _ = _offline()
    sql = _sql(registry, User, include=['tasks'], where={'$tasks.title$': 'x'})
    assert 'tasks.title =' in sql.replace('"', '')
    with pytest.raises(QueryError):
        _sql(registry, User, where={'$projects.name$': 'x'})
    with pytest.raises(QueryError):
        _sql(registry, User, where={'nope': 1})


def test_grouped_limit_needs_window_functions():
    registry, User, _, _ = _offline(BaseAdapter())
    link = Link(User.association('tasks'), [1, 2], limit=2)
    with pytest.raises(UnsupportedFeatureError):
        registry.builder.build(registry.model('Task'), FindOptions(link=link))

    pg = ModelRegistry(adapter=PostgresAdapter())
    PgUser, PgTask, _ = define_users_and_tasks(pg)
    plan = pg.builder.build(PgTask, FindOptions(link=Link(PgUser.association('tasks'), [1, 2], limit=2), order=['title']))
    sql = normalize(pg.adapter.render(plan.statement))
    assert 'row_number() over (partition by' in sql


def test_many_to_many_join_groups_junction_and_target():
    registry, User, _, _ = _offline()
    define_projects(registry, User)
    sql = _sql(registry, User, include=['projects'])
    assert '("memberships" as "projects->through" join "projects" as projects' in sql


def test_long_aliases_are_shortened():
    registry = ModelRegistry(adapter=PostgresAdapter())
    User, Task, SubTask = define_users_and_tasks(registry)
    long_alias = 'sub_tasks_with_a_name_that_goes_well_beyond_the_postgres_identifier_limit'
    Task.has_many(SubTask, alias=long_alias, foreign_key='task_id')
    plan = registry.builder.build(User, FindOptions(include=[Include('tasks', include=[long_alias])]))
    labels = [label for shape in plan.shape.children for child in shape.children for label in child.labels.values()]
    assert labels and all(len(label) <= 63 for label in labels)


@pytest.mark.asyncio
async def test_include_cardinality_matches_count(registry):
    User, Task, _ = define_users_and_tasks(registry)
    await registry.sync(force=True)
    users = await seed_users(User, 'a', 'b', 'c')
    for i, owner in enumerate([users[0], users[0], users[1], users[0], users[1]]):
        await Task.create({'title': f"t{i}", 'active': i % 2 == 0, 'user_id': owner.id})

    loaded = await User.find_all(include=['tasks'])
    assert len(loaded) == 3
    for user in loaded:
        assert len(user.tasks) == await user.assoc('tasks').count()

    active = await User.find_all(include=[Include('tasks', where={'active': True}, required=False)])
    for user in active:
        assert len(user.tasks) == await user.assoc('tasks').count(where={'active': True})


@pytest.mark.asyncio
async def test_limit_applies_to_roots_not_joined_rows(registry, statements):
    User, Task, _ = define_users_and_tasks(registry)
    await registry.sync(force=True)
    a, b, c = await seed_users(User, 'a', 'b', 'c')
    for title in ('t1', 't2', 't3'):
        await Task.create({'title': title, 'user_id': a.id})
    await Task.create({'title': 't4', 'user_id': b.id})

    statements.clear()
    users = await User.find_all(include=[Include('tasks', order=['title'])], order=['username'], limit=2)
    assert [u.username for u in users] == ['a', 'b']
    assert [t.title for t in users[0].tasks] == ['t1', 't2', 't3']
    assert len(selects(statements)) == 1

    page = await User.find_all(include=['tasks'], order=['username'], limit=1, offset=1)
    assert [u.username for u in page] == ['b']
    assert [t.title for t in page[0].tasks] == ['t4']
