"""Service definitions shipped with telerpc."""
