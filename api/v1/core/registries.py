from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Task Registry - CPU-bound computations run inside worker processes
class Task(Protocol):
    """
    Protocol for worker tasks.

    Implementations must be module-level callables so they can be handed to a
    spawned worker process. They receive the job payload and return a
    JSON-serializable result, raising an exception on invalid input.
    """

    def __call__(self, payload: dict[str, Any]) -> dict[str, Any]: ...


class TaskRegistry(Registry[Task]):
    """Registry for worker tasks (count_primes, ...)."""

    def __init__(self):
        super().__init__("Task")


task_registry = TaskRegistry()
