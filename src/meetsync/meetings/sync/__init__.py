"""Meeting sync workers -- reconciliation loop, auto-end loop and their manager."""
