from pathlib import Path

from sardine import InputBuildSettings


# Optional, and can be overridden with CLI arguments.
SETTINGS = InputBuildSettings(
    source_dir=Path(__file__).parent / 'starter_site',
    working_dir=Path('.tmp/starter_site'),
    output_dir=Path('output/starter_site'),
    stylesheet_name='main.css',
)
