"""
Core：会话契约、错误分类、取消控制、Step Scheduler 与 Session Manager。
"""
