"""
Cron Task Manager

Runs user-defined shell commands on 5-field cron schedules.

Features:
- Strict cron expression validation and next-trigger computation
- One timer per active task, runs on a bounded worker pool
- Command timeouts that kill the whole process group
- Activity log and live broadcast of every task event
- Webhook and email notifications per task
"""

from cronmanager.config import ManagerConfig
from cronmanager.cron import next_trigger, parse_cron
from cronmanager.manager import TaskManager
from cronmanager.service import CronScheduler

__version__ = "0.1.0"
__all__ = ["ManagerConfig", "TaskManager", "CronScheduler", "parse_cron", "next_trigger"]
