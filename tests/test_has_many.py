import logging

import pytest

from berryorm.adapters import BaseAdapter
from berryorm.config import RegistryConfig
from berryorm.core.includes import Include
from berryorm.errors import UnsupportedFeatureError
from berryorm.registry import ModelRegistry

from tests.models import define_users_and_tasks, normalize, seed_users, selects


@pytest.mark.asyncio
async def test_nested_create_round_trip_keeps_creation_order(registry):
    User, Task, SubTask = define_users_and_tasks(registry)
    await registry.sync(force=True)

    user = await User.create(
        {
            'username': 'john',
            'tasks': [
                {'title': 'first', 'sub_tasks': [{'title': 'x'}, {'title': 'y'}]},
                {'title': 'second'},
                {'title': 'third'},
            ],
        },
        include=[Include('tasks', include=['sub_tasks'])],
    )
    assert user.id is not None
    assert [t.user_id for t in user.tasks] == [user.id] * 3

    tasks = await user.assoc('tasks').get(order=['id'])
    assert [t.title for t in tasks] == ['first', 'second', 'third']

    loaded = await User.find_by_pk(user.id, include=[Include('tasks', order=['id'], include=[Include('sub_tasks', order=['id'])])])
    assert [t.title for t in loaded.tasks] == ['first', 'second', 'third']
    assert [s.title for s in loaded.tasks[0].sub_tasks] == ['x', 'y']
    assert loaded.tasks[1].sub_tasks == []


@pytest.mark.asyncio
async def test_set_none_then_set_single(registry):
    User, Task, _ = define_users_and_tasks(registry)
    await registry.sync(force=True)
    (user,) = await seed_users(User, 'john')
    t1 = await Task.create({'title': 'a'})
    t2 = await Task.create({'title': 'b'})

    await user.assoc('tasks').set([t1, t2])
    assert sorted(t.title for t in await user.assoc('tasks').get()) == ['a', 'b']

    await user.assoc('tasks').set(None)
    assert await user.assoc('tasks').get() == []

    await user.assoc('tasks').set([t2])
    assert [t.id for t in await user.assoc('tasks').get()] == [t2.id]
    # Detached rows keep existing, only their foreign key is cleared
    assert (await Task.find_by_pk(t1.id)).user_id is None


@pytest.mark.asyncio
async def test_set_none_is_ignored_with_omit_null(database):
    registry = ModelRegistry(database, config=RegistryConfig(omit_null=True))
    User, Task, _ = define_users_and_tasks(registry)
    await registry.sync(force=True)
    (user,) = await seed_users(User, 'john')
    task = await Task.create({'title': 'a'})

    await user.assoc('tasks').set([task])
    await user.assoc('tasks').set(None)
    assert [t.id for t in await user.assoc('tasks').get()] == [task.id]

    await user.assoc('tasks').set(None, omit_null=False)
    assert await user.assoc('tasks').get() == []


@pytest.mark.asyncio
async def test_batched_get_has_an_entry_for_every_parent(registry):
    User, Task, _ = define_users_and_tasks(registry)
    await registry.sync(force=True)
    users = await seed_users(User, 'a', 'b', 'c')
    for title, owner in [('t1', users[0]), ('t2', users[0]), ('t3', users[1])]:
        await Task.create({'title': title, 'user_id': owner.id})
    await Task.create({'title': 'orphan'})

    result = await User.association('tasks').get(users)
    assert set(result) == {u.id for u in users}
    assert sum(len(v) for v in result.values()) == 3
    assert sorted(t.title for t in result[users[0].id]) == ['t1', 't2']
    assert result[users[2].id] == []

    unsaved = User.build({'username': 'draft'})
    mixed = await User.association('tasks').get([users[1], unsaved])
    assert set(mixed) == {users[1].id, None}
    assert mixed[None] == []
    assert [t.title for t in mixed[users[1].id]] == ['t3']


@pytest.mark.asyncio
async def test_two_level_separate_limit_and_order(registry, statements):
    User, Task, SubTask = define_users_and_tasks(registry)
    await registry.sync(force=True)
    a, b = await seed_users(User, 'a', 'b')
    for title in ['b', 'd', 'c', 'a']:
        task = await Task.create({'title': title, 'user_id': a.id})
        for sub in ['z', 'x', 'y']:
            await SubTask.create({'title': f"{title}{sub}", 'task_id': task.id})
    for title in ['y', 'x', 'z']:
        await Task.create({'title': title, 'user_id': b.id})

    statements.clear()
    users = await User.find_all(
        order=['username'],
        include=[Include(
            'tasks', separate=True, limit=2, order=[('title', 'ASC')],
            include=[Include('sub_tasks', separate=True, limit=2, order=[('title', 'ASC')])],
        )],
    )
    assert [u.username for u in users] == ['a', 'b']
    assert [t.title for t in users[0].tasks] == ['a', 'b']
    assert [[s.title for s in t.sub_tasks] for t in users[0].tasks] == [['ax', 'ay'], ['bx', 'by']]
    assert [t.title for t in users[1].tasks] == ['x', 'y']
    assert all(t.sub_tasks == [] for t in users[1].tasks)
    # Root query, one batched query per separate level
    captured = selects(statements)
    assert len(captured) == 3
    assert "row_number() over" in captured[1]


@pytest.mark.asyncio
async def test_scoped_association(registry):
    User, Task, _ = define_users_and_tasks(registry)
    User.has_many(Task, alias='active_tasks', foreign_key='user_id', scope={'active': True})
    await registry.sync(force=True)
    (user,) = await seed_users(User, 'john')
    await Task.create({'title': 'on', 'active': True, 'user_id': user.id})
    await Task.create({'title': 'off', 'active': False, 'user_id': user.id})

    assert await user.assoc('tasks').count() == 2
    assert await user.assoc('active_tasks').count() == 1
    assert [t.title for t in await user.assoc('active_tasks').get()] == ['on']

    created = await user.assoc('active_tasks').create({'title': 'new', 'active': False})
    assert created.active is True
    assert await user.assoc('active_tasks').count() == 2

    loaded = await User.find_by_pk(user.id, include=['active_tasks'])
    assert sorted(t.title for t in loaded.active_tasks) == ['new', 'on']


@pytest.mark.asyncio
async def test_source_key_and_include_where(registry):
    User, Task, _ = define_users_and_tasks(registry)
    User.has_many(Task, alias='mailed_tasks', source_key='email', foreign_key='owner_email')
    await registry.sync(force=True)
    a, b = await seed_users(User, 'a', 'b')
    await Task.create({'title': 'm1', 'owner_email': a.email})
    await Task.create({'title': 'm2', 'owner_email': a.email})
    await Task.create({'title': 'm1', 'owner_email': b.email})

    assert sorted(t.title for t in await a.assoc('mailed_tasks').get()) == ['m1', 'm2']

    users = await User.find_all(include=[Include('mailed_tasks', where={'title': 'm2'})])
    assert [u.username for u in users] == ['a']
    assert [t.title for t in users[0].mailed_tasks] == ['m2']


@pytest.mark.asyncio
async def test_add_remove_has_count(registry):
    User, Task, _ = define_users_and_tasks(registry)
    await registry.sync(force=True)
    a, b = await seed_users(User, 'a', 'b')
    t1 = await Task.create({'title': 't1', 'priority': 1})
    t2 = await Task.create({'title': 't2', 'priority': 3})
    t3 = await Task.create({'title': 't3', 'priority': 5, 'user_id': b.id})

    await a.assoc('tasks').add([t1])
    await a.assoc('tasks').add_one(t2.id)
    assert t1.user_id == a.id
    assert await a.assoc('tasks').count() == 2
    assert await a.assoc('tasks').count(where={'priority': {'gte': 2}}) == 1

    assert await a.assoc('tasks').has([t1, t2]) is True
    assert await a.assoc('tasks').has([t1, t3]) is False
    assert await a.assoc('tasks').has_one(t2.id) is True

    await a.assoc('tasks').remove_one(t1)
    assert await a.assoc('tasks').has_one(t1) is False
    assert (await Task.find_by_pk(t1.id)).user_id is None
    assert await b.assoc('tasks').count() == 1


@pytest.mark.asyncio
async def test_create_respects_fields_and_logging(registry):
    User, Task, _ = define_users_and_tasks(registry)
    await registry.sync(force=True)
    (user,) = await seed_users(User, 'john')

    calls = []
    task = await user.assoc('tasks').create({'title': 'spy', 'priority': 9}, fields=['title'], logging=calls.append)
    assert len(calls) == 1
    assert normalize(calls[0]).startswith('insert into')

    stored = await Task.find_by_pk(task.id)
    assert stored.title == 'spy'
    assert stored.user_id == user.id
    assert stored.priority is None


@pytest.mark.asyncio
async def test_accessor_names_dispatch(registry):
    User, Task, _ = define_users_and_tasks(registry)
    await registry.sync(force=True)
    (user,) = await seed_users(User, 'john')
    task = await Task.create({'title': 't'})

    assert User.accessors['add_task'] == ('tasks', 'add_one')
    assert User.accessors['count_tasks'] == ('tasks', 'count')
    await user.invoke('add_task', task)
    assert await user.invoke('count_tasks') == 1
    with pytest.raises(AttributeError):
        await user.invoke('add_projects', task)


@pytest.mark.asyncio
async def test_self_association_shares_one_key(registry):
    _, Task, _ = define_users_and_tasks(registry)
    Task.has_many(Task, alias='subtasks')
    Task.belongs_to(Task, alias='parent', foreign_key='task_id')
    assert Task.attributes['task_id'].owners == [('Task', 'subtasks'), ('Task', 'parent')]
    await registry.sync(force=True)

    root = await Task.create({'title': 'root'})
    await root.assoc('subtasks').create({'title': 'b'})
    await root.assoc('subtasks').create({'title': 'a'})

    (loaded,) = await Task.find_all(where={'task_id': None}, include=[Include('subtasks', order=['title'], include=['parent'])])
    assert [t.title for t in loaded.subtasks] == ['a', 'b']
    assert all(t.parent.id == root.id for t in loaded.subtasks)


@pytest.mark.asyncio
async def test_per_parent_limit_without_window_functions(database, statements, caplog):
    plain = ModelRegistry(database, adapter=BaseAdapter())
    User, Task, _ = define_users_and_tasks(plain)
    await plain.sync(force=True)
    users = await seed_users(User, 'a', 'b', 'c')
    for title, owner in [('t2', users[0]), ('t1', users[0]), ('t4', users[1]), ('t3', users[1])]:
        await Task.create({'title': title, 'user_id': owner.id})

    with pytest.raises(UnsupportedFeatureError):
        await User.association('tasks').get(users, limit=1, order=['title'])
    # A single parent needs no partitioning
    assert [t.title for t in await users[0].assoc('tasks').get(limit=1, order=['title'])] == ['t1']

    emulated = ModelRegistry(database, adapter=BaseAdapter(), config=RegistryConfig(emulate_grouped_limit=True))
    EUser, _, _ = define_users_and_tasks(emulated)
    parents = await EUser.find_all(order=['username'])
    statements.clear()
    with caplog.at_level(logging.DEBUG, logger="berryorm"):
        result = await EUser.association('tasks').get(parents, limit=1, order=['title'])
    assert {k: [t.title for t in v] for k, v in result.items()} == {
        parents[0].id: ['t1'],
        parents[1].id: ['t3'],
        parents[2].id: [],
    }
    # One limited query per parent key
    captured = selects(statements)
    assert len(captured) == 3
    assert not any('row_number' in sql for sql in captured)
    assert any('Emulating grouped limit' in r.getMessage() for r in caplog.records)
