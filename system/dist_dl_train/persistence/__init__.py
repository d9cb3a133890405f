from .state_store import TrainingHistoryStore

__all__ = ['TrainingHistoryStore']
