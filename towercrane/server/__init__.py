"""Controller, cycle sequencing and loop timing."""
