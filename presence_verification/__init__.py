"""Django project hosting the presence verification engine."""
