"""Reminder engine (API, repository, scheduler, dispatcher).

Reminders are stored through a ReminderRepository, picked up by the background
ReminderScheduler when due, and delivered by the NotificationDispatcher as a
webhook call or an e-mail. Recurring reminders spawn a new record per occurrence.
"""
