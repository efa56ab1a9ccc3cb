import pytest
from sqlalchemy import Integer, String

from berryorm.adapters import SQLiteAdapter
from berryorm.core.attributes import Attribute, attribute
from berryorm.errors import AssociationConfigurationError, ConfigurationError
from berryorm.registry import ModelRegistry

from tests.models import define_users_and_tasks


def _registry():
    return ModelRegistry(adapter=SQLiteAdapter())


def test_default_model_shape():
    registry = _registry()
    User = registry.define('User', {'username': String(50)})
    assert User.primary_key == 'id'
    assert User.table_name == 'Users'
    assert list(User.attributes) == ['id', 'username']
    assert User.attributes['id'].autoincrement is True

    Account = registry.define('Account', {'code': attribute(String(10), primary_key=True)})
    assert Account.primary_key == 'code'
    assert 'id' not in Account.attributes
    with pytest.raises(ConfigurationError):
        registry.define('Account', {})
    with pytest.raises(ConfigurationError):
        registry.define('Broken', {'a': attribute(Integer, primary_key=True), 'b': attribute(Integer, primary_key=True)})


def test_underscored_models():
    registry = _registry()
    Item = registry.define('LineItem', {'unitPrice': Integer}, underscored=True)
    assert Item.table_name == 'line_items'
    assert Item.field('unitPrice') == 'unit_price'


def test_colliding_default_foreign_key_fails_at_declaration():
    registry = _registry()
    User = registry.define('User', {'username': String(50)})
    Task = registry.define('Task', {'title': String(100)})
    User.has_many(Task, alias='owned_tasks')
    with pytest.raises(AssociationConfigurationError):
        User.has_many(Task, alias='assigned_tasks')
    assert 'assigned_tasks' not in User.associations
    # An explicit foreign key resolves it
    User.has_many(Task, alias='assigned_tasks', foreign_key='assignee_id')
    assert Task.attributes['assignee_id'].references.model == 'User'


def test_duplicate_alias_fails():
    registry = _registry()
    User, Task, _ = define_users_and_tasks(registry)
    with pytest.raises(AssociationConfigurationError):
        User.has_many(Task, foreign_key='other_id')


def test_naming_collision_between_alias_and_attribute():
    registry = _registry()
    User = registry.define('User', {'username': String(50)})
    Task = registry.define('Task', {'title': String(100), 'owner': String(20)})
    with pytest.raises(AssociationConfigurationError, match="Naming collision"):
        Task.belongs_to(User, alias='owner')
    with pytest.raises(AssociationConfigurationError, match="Naming collision"):
        Task.belongs_to(User, alias='creator', foreign_key='creator')


def test_foreign_key_referencing_another_model_fails():
    registry = _registry()
    User, Task, _ = define_users_and_tasks(registry)
    Project = registry.define('Project', {'name': String(50)})
    with pytest.raises(AssociationConfigurationError):
        Task.belongs_to(Project, foreign_key='user_id')


def test_key_type_inference_and_override():
    registry = _registry()
    Account = registry.define('Account', {'code': attribute(String(10), primary_key=True)})
    Task = registry.define('Task', {'title': String(100), 'user_id': Integer})
    Account.has_many(Task)
    assert isinstance(Task.attributes['account_code'].type, String)
    assert Task.attributes['account_code'].type is not Account.attributes['code'].type

    User = registry.define('User', {})
    with pytest.raises(AssociationConfigurationError):
        User.has_many(Task, key_type=String)
    Note = registry.define('Note', {})
    User.has_many(Note, key_type=String)
    assert isinstance(Note.attributes['user_id'].type, String)


def test_foreign_key_options_as_dict_and_attribute():
    registry = _registry()
    User = registry.define('User', {})
    Task = registry.define('Task', {})
    Note = registry.define('Note', {})
    User.has_many(Task, foreign_key={'name': 'owner_id', 'allow_null': False})
    assert Task.attributes['owner_id'].allow_null is False
    assert Task.attributes['owner_id'].references.on_delete == 'CASCADE'

    User.has_many(Note, foreign_key=Attribute(Integer, name='author_id', field='author', default=0))
    attr = Note.attributes['author_id']
    assert attr.field == 'author'
    assert attr.default == 0
    assert attr.references.on_delete == 'SET NULL'


def test_merge_keeps_existing_default_and_explicit_actions():
    registry = _registry()
    User = registry.define('User', {})
    Task = registry.define('Task', {'user_id': attribute(Integer, default=7)})
    User.has_many(Task, on_delete='restrict')
    Task.belongs_to(User, foreign_key={'default': 1})
    attr = Task.attributes['user_id']
    assert attr.default == 7
    assert attr.references.on_delete == 'RESTRICT'
    assert attr.references.on_update == 'SET NULL'


def test_constraints_false_skips_database_foreign_key():
    registry = _registry()
    User = registry.define('User', {})
    Task = registry.define('Task', {})
    User.has_many(Task, constraints=False)
    assert not registry.table(Task).foreign_keys
    Note = registry.define('Note', {})
    User.has_many(Note)
    (fk,) = registry.table(Note).foreign_keys
    assert fk.ondelete == 'SET NULL'


def test_unique_source_key_required():
    registry = _registry()
    User = registry.define('User', {'email': String(100), 'login': attribute(String(20), unique=True)})
    Task = registry.define('Task', {})
    with pytest.raises(AssociationConfigurationError):
        User.has_many(Task, source_key='email', foreign_key='email_ref')
    User.has_many(Task, source_key='login')
    assert Task.attributes['user_login'].references.key == 'login'


def test_registry_lookup_by_model_and_alias():
    registry = _registry()
    User, Task, _ = define_users_and_tasks(registry)
    assert registry.association('User', 'tasks') is User.association('tasks')
    assert registry.association(Task, 'user').kind == 'belongs_to'
    with pytest.raises(ConfigurationError):
        registry.association('User', 'nothing')
