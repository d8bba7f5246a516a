"""Internal helpers for sandbox provisioning. Not part of the public interface."""
