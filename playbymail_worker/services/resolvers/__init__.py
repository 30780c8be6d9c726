"""Per game type resolvers and turn rules."""
