"""
LoopController：Step Scheduler 的迭代计数/预算控制（internal）。

目标：
- 将“推理迭代计数、max_steps、batch id 生成”等状态收敛到单一对象；
- 与 CancellationController 分离：本对象不关心取消与 deadline。
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LoopController:
    """
    LoopController（internal）。

    字段：
    - max_steps：最大允许的推理迭代次数（每次调用推理协作方消耗一次）
    """

    max_steps: int

    def __post_init__(self) -> None:
        """初始化内部计数器。"""

        self._iterations = 0
        self._batches = 0

    @property
    def iterations(self) -> int:
        """已消耗的推理迭代次数。"""

        return self._iterations

    def try_consume_iteration(self) -> bool:
        """
        尝试消耗一次推理迭代预算。

        返回：
        - True：预算充足，且已消耗一次
        - False：预算耗尽，且未消耗
        """

        if self._iterations >= int(self.max_steps):
            return False
        self._iterations += 1
        return True

    def next_batch_id(self, session_id: str) -> str:
        """推进批次计数并返回 batch_id（形如 `<session_id>:batch_1`）。"""

        self._batches += 1
        return f"{session_id}:batch_{self._batches}"


__all__ = ["LoopController"]
