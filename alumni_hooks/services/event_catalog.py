"""
Catalog of platform events a webhook can subscribe to.
"""

TEST_EVENT = "webhook.test"

# event -> (display name, description)
AVAILABLE_EVENTS: dict[str, tuple[str, str]] = {
    "user.created": ("User Created", "Triggered when a new user registers"),
    "user.updated": ("User Updated", "Triggered when user profile is updated"),
    "user.deleted": ("User Deleted", "Triggered when user account is deleted"),
    "post.created": ("Post Created", "Triggered when a new post is created"),
    "post.updated": ("Post Updated", "Triggered when a post is edited"),
    "post.deleted": ("Post Deleted", "Triggered when a post is deleted"),
    "post.liked": ("Post Liked", "Triggered when a post receives a like"),
    "post.commented": ("Post Commented", "Triggered when a post receives a comment"),
    "post.shared": ("Post Shared", "Triggered when a post is shared"),
    "connection.created": ("Connection Created", "Triggered when a connection request is sent"),
    "connection.accepted": ("Connection Accepted", "Triggered when a connection request is accepted"),
    "event.created": ("Event Created", "Triggered when a new event is created"),
    "event.updated": ("Event Updated", "Triggered when an event is updated"),
    "event.registered": ("Event Registration", "Triggered when someone registers for an event"),
    "event.cancelled": ("Event Cancelled", "Triggered when an event is cancelled"),
    "donation.completed": ("Donation Completed", "Triggered when a donation is successfully processed"),
    "donation.failed": ("Donation Failed", "Triggered when a donation fails"),
    "donation.refunded": ("Donation Refunded", "Triggered when a donation is refunded"),
    "mentorship.requested": ("Mentorship Requested", "Triggered when mentorship is requested"),
    "mentorship.accepted": ("Mentorship Accepted", "Triggered when mentorship request is accepted"),
    "mentorship.declined": ("Mentorship Declined", "Triggered when mentorship request is declined"),
    "job.applied": ("Job Application", "Triggered when someone applies for a job"),
    "achievement.earned": ("Achievement Earned", "Triggered when a user earns an achievement"),
    "notification.sent": ("Notification Sent", "Triggered when a notification is sent"),
}


def is_known_event(event_type: str) -> bool:
    return event_type in AVAILABLE_EVENTS


def unknown_events(events: list[str]) -> list[str]:
    """Return the names in ``events`` that are not in the catalog, in input order."""
    return [e for e in events if e not in AVAILABLE_EVENTS]


def list_events() -> list[dict[str, str]]:
    """Catalog as API-ready dicts."""
    return [
        {"event": key, "name": name, "description": description}
        for key, (name, description) in AVAILABLE_EVENTS.items()
    ]
