"""
Backup module for Stowage.

This module handles the core backup functionality including:
- Name generation
- Steps (what gets captured and restored)
- Compression
- Remote storage (S3 and local)
- The backup index
- Orchestration of create/restore/delete
- Retention and reconciliation
"""

from .orchestrator import BackupService
from .steps import Step, StepRunner, register_step
from .compression import get_compressor
from .storage import S3Storage, LocalStorage, create_storage
from .index import BackupIndex
from .retention import RetentionManager

__all__ = [
    'BackupService',
    'Step',
    'StepRunner',
    'register_step',
    'get_compressor',
    'S3Storage',
    'LocalStorage',
    'create_storage',
    'BackupIndex',
    'RetentionManager'
]
