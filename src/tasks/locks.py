"""Redis-based per-task lock primitives for media post-processing."""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis


LOCK_KEY_TEMPLATE = "asmrgen:task:{task_id}:media:lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def task_lock_key(task_id: str) -> str:
    return LOCK_KEY_TEMPLATE.format(task_id=task_id)


@dataclass(frozen=True)
class TaskLockHandle:
    manager: "TaskLockManager"
    task_id: str
    token: str
    key: str

    def release(self) -> bool:
        return self.manager.release(self.task_id, self.token)


class TaskLockManager:
    """Acquire and release one lease per task id using Redis SET NX EX.

    The lease expires on its own, so a crashed worker never blocks a task forever.
    """

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 300) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def acquire(self, task_id: str) -> TaskLockHandle | None:
        key = task_lock_key(task_id)
        token = str(uuid.uuid4())
        acquired = self._redis.set(key, token, nx=True, ex=self._ttl_seconds)
        if not acquired:
            return None
        return TaskLockHandle(manager=self, task_id=task_id, token=token, key=key)

    def release(self, task_id: str, token: str) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, task_lock_key(task_id), token)
        return int(released) == 1
