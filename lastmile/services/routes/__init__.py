"""Route planning, alternate plans and route execution."""
