"""Cron scheduling of topic processing."""

from topic_tracker.scheduling.scheduler import CronSchedule, TopicScheduler, planned_schedules

__all__ = ["CronSchedule", "TopicScheduler", "planned_schedules"]
