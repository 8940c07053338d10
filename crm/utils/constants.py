from __future__ import annotations

DEFAULT_EDIT_WINDOW_MINUTES = 30
DEFAULT_SESSION_TTL_DAYS = 3

TICKET_PRIORITIES = ("low", "medium", "urgent")
TICKET_CHANNELS = ("phone", "email", "portal", "in_person")

INTRODUCTIONS_MENU = "introductions"
USERS_MENU = "users"

CHANGE_INSERT = "insert"
CHANGE_UPDATE = "update"
CHANGE_DELETE = "delete"
CHANGE_TYPES = (CHANGE_INSERT, CHANGE_UPDATE, CHANGE_DELETE)

TABLE_TICKETS = "tickets"
TABLE_REFERRALS = "referrals"
TABLE_INTRODUCTIONS = "customer_introductions"
TABLE_INTRODUCTION_REFERRALS = "introduction_referrals"

MANAGER_LABELS = ("manager", "مدیر")
LEAD_PREFIXES = ("lead of ", "مسئول ")
SPECIALIST_PREFIXES = ("specialist of ", "کارشناس ")

# Spelling variants that name the same department.
DEPARTMENT_ALIASES = {
    "پشتیبانی": "پشتیبان",
    "برنامه‌نویس": "برنامه نویس",
}

CUSTOMER_LEVEL_WEIGHTS = {"A": 40, "B": 30, "C": 20, "D": 10}
CONTRACT_LEVEL_WEIGHTS = {"gold": 30, "silver": 20, "bronze": 10}
PRIORITY_WEIGHTS = {"urgent": 30, "medium": 15, "low": 0}
ACTIVE_CONTRACT_STATUS = "active"
