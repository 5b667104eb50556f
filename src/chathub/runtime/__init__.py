from chathub.runtime.hooks import CoordinatorHooks

__all__ = ["CoordinatorHooks"]
