"""Control plane: lifecycle, wake gateway and the periodic fleet tasks."""
