"""Input validation for booking creation and waitlist requests."""
