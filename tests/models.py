"""Model declarations shared by the test-suite."""

from sqlalchemy import Boolean, Integer, String

from berryorm.core.attributes import attribute


def normalize(sql: str) -> str:
    return " ".join(sql.lower().split())


def selects(statements):
    return [normalize(s) for s in statements if s.lstrip().upper().startswith("SELECT")]


def define_users_and_tasks(registry):
    """User 1-n Task 1-n SubTask, with the inverse Task -> User belongs-to."""
    User = registry.define('User', {
        'username': attribute(String(50), allow_null=False),
        'email': attribute(String(100), unique=True),
    })
    Task = registry.define('Task', {
        'title': String(100),
        'active': attribute(Boolean, default=True),
        'priority': Integer,
    })
    SubTask = registry.define('SubTask', {
        'title': String(100),
    })
    User.has_many(Task)
    Task.belongs_to(User)
    Task.has_many(SubTask)
    return User, Task, SubTask


def define_projects(registry, User):
    """User n-m Project through an explicit Membership junction carrying a role."""
    Project = registry.define('Project', {'name': attribute(String(50), allow_null=False)})
    Membership = registry.define('Membership', {'role': String(20)})
    User.belongs_to_many(Project, through=Membership)
    Project.belongs_to_many(User, through=Membership)
    return Project, Membership


async def seed_users(User, *names):
    return [await User.create({'username': n, 'email': f"{n}@example.com"}) for n in names]
