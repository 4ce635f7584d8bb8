"""Multi-factor presence verification: proximity, face liveness and attendance fusion."""
