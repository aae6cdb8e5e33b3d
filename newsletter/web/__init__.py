"""HTTP surface: `GET /health_check` and `POST /subscriptions`."""
