"""读写锁

安装树按 (运行时, 架构) 根目录各持有一把: 单写者、多读者。
写者优先: 有写者排队时新读者等待，避免写者饿死。
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ReadWriteLock:
    """单写者 / 多读者锁（不可重入）"""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class LockRegistry:
    """按键懒创建读写锁，同一键始终得到同一把锁"""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[object, ReadWriteLock] = {}

    def get(self, key: object) -> ReadWriteLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = ReadWriteLock()
            return lock
