"""autosolve: generate, verify and submit competitive-programming solutions."""
