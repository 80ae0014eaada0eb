"""
Bloom — Group Reading Events with Peer Flowers
===============================================
Coordinates multi-week group reading events: leaders draft an event,
admins approve it, participants enroll and check in daily, and everyone
spends a small daily allowance of "flowers" on each other's check-ins.
Flowers feed daily leaderboards and the top-3 certificates issued when
the event completes.

Package layout::

    bloom/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Shared defaults, honor levels, rank badges
    ├── errors.py          # Error hierarchy + ServiceResult
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session helper, async bridge
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── calendar.py    # Activity-day math
    │   ├── validation.py  # Submission rules
    │   ├── completion.py  # Completion rate + one-way latch
    │   ├── assignment.py  # Round-robin daily leaders
    │   ├── ranking.py     # Leaderboard aggregation + ordering
    │   └── events.py      # Outbox topics + envelope
    └── services/
        ├── event_service.py       # Create/edit drafts + schedules
        ├── approval_service.py    # Submit / approve / reject
        ├── lifecycle_service.py   # Open / start / complete
        ├── enrollment_service.py  # Enroll / cancel / completion rate
        ├── checkin_service.py     # Daily check-ins
        ├── quota_service.py       # Daily flower ledger (atomic consume)
        ├── reward_service.py      # Give flowers
        ├── leader_service.py      # Voluntary claim / random assignment
        ├── ranking_service.py     # Daily + final leaderboards
        ├── certificate_service.py # Top-N certificates
        ├── outbox_service.py      # Transactional outbox + dispatcher
        └── daily_jobs.py          # External daily trigger
"""

__version__ = "0.1.0"
