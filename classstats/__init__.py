"""Class stats engine: idempotent quiz-event ingestion into class leaderboards."""
