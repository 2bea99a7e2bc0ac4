"""Engine — selector evaluation, inheritance, prerequisites, stages, execution."""
