"""Pure numerical engines (numpy, pandas, scipy). No I/O."""
