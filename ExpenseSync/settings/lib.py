"""Settings library for the backend connection and sync behaviour.

Provides:
    - Schema validation and enforcement for the settings.json structure.
    - Loading, saving and reverting application settings.
    - Application paths for the local database and cached credentials.
"""

import json
import logging
import os
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from .locale import LOCALE_MAP
from ..status import status

app_name: str = 'ExpenseSync'

CONFIG_DIR_ENV_KEY: str = 'EXPENSESYNC_CONFIG_DIR'

METADATA_KEYS: List[str] = [
    'locale',
    'seed_default_categories',
]

SETTINGS_SCHEMA: Dict[str, Any] = {
    'firebase': {
        'type': dict,
        'required': True,
        'item_schema': {
            'project_id': {'type': str, 'required': True},
            'api_key': {'type': str, 'required': True},
            'database': {'type': str, 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'probe_host': {'type': str, 'required': True},
            'probe_port': {'type': int, 'required': True},
            'probe_interval': {'type': (int, float), 'required': True},
            'probe_timeout': {'type': (int, float), 'required': True},
            'poll_interval': {'type': (int, float), 'required': True},
            'remote_timeout': {'type': (int, float), 'required': True},
        }
    },
    'metadata': {
        'type': dict,
        'required': True,
        'item_schema': {
            'locale': {'type': str, 'required': True, 'choices': LOCALE_MAP},
            'seed_default_categories': {'type': bool, 'required': True},
        }
    },
}


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate a single settings section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Mapping of field names to ``type`` / ``required`` / ``choices`` specs.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a required field is missing, a numeric field is negative or a value is not one of
            the field's choices.
    """
    logging.debug(f'Validating "{section_name}" section.')
    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section:
            msg: str = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue
        value = section[field]
        # bool is an int subclass, keep it out of numeric fields
        if isinstance(value, bool) and field_specs['type'] is not bool:
            msg = f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, got bool.'
            logging.error(msg)
            raise TypeError(msg)
        if not isinstance(value, field_specs['type']):
            msg = (
                f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value < 0:
            msg = f'Section "{section_name}" field "{field}" must not be negative.'
            logging.error(msg)
            raise ValueError(msg)
        if 'choices' in field_specs and value not in field_specs['choices']:
            msg = f'Section "{section_name}" field "{field}" must be one of {field_specs["choices"]}, got {value!r}.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure default templates and directories exist.

    The data directory defaults to Qt's application data location. Setting the
    ``EXPENSESYNC_CONFIG_DIR`` environment variable (or passing ``root``) relocates it,
    which is how the test-suite isolates itself.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        root = root or os.environ.get(CONFIG_DIR_ENV_KEY)
        if root:
            app_data_dir = pathlib.Path(root)
        else:
            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.settings_template: pathlib.Path = self.template_dir / 'settings.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.settings_path: pathlib.Path = self.config_dir / 'settings.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'
        self.db_path: pathlib.Path = self.db_dir / 'local.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare configuration directories and files.

        Raises:
            FileNotFoundError: If the settings template is missing.
        """
        logging.debug(f'Verifying required templates in {self.template_dir}')
        if not self.settings_template.exists():
            msg: str = f'Missing settings template: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for directory in (self.config_dir, self.auth_dir, self.db_dir):
            if not directory.exists():
                logging.debug(f'Creating directory: {directory}')
                directory.mkdir(parents=True, exist_ok=True)

        if not self.settings_path.exists():
            logging.debug(f'Copying default settings from template to {self.settings_path}')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Restore settings.json from the default template file.

        Raises:
            FileNotFoundError: If the settings template file is missing.
        """
        logging.debug(f'Reverting settings to template: {self.settings_template}')
        if not self.settings_template.exists():
            msg: str = f'Settings template not found: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        shutil.copy(self.settings_template, self.settings_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save settings.json sections.
    """

    def __init__(self, root: Optional[str] = None, settings_path: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load the settings data.

        Args:
            root: Optional application data directory.
            settings_path: Optional path to a custom settings.json file.
        """
        super().__init__(root=root)

        self.settings_path: pathlib.Path = pathlib.Path(settings_path) if settings_path else self.settings_path

        self.data: Dict[str, Any] = {k: {} for k in SETTINGS_SCHEMA}
        self.load()

    def __getitem__(self, key: str) -> Any:
        """Retrieve a metadata value using dictionary-style access.

        Raises:
            KeyError: If key is not in METADATA_KEYS.
        """
        if key not in METADATA_KEYS:
            raise KeyError(f'Invalid metadata key: {key}, must be one of {METADATA_KEYS}')
        return self.data['metadata'].get(key)

    def __setitem__(self, key: str, value: Any) -> None:
        """Assign a metadata value using dictionary-style access and persist it.

        Raises:
            KeyError: If key is not in METADATA_KEYS.
            ValueError: If the value is not accepted for the key.
        """
        if key not in METADATA_KEYS:
            raise KeyError(f'Invalid metadata key: {key}, must be one of {METADATA_KEYS}')

        _type = SETTINGS_SCHEMA['metadata']['item_schema'][key]['type']
        if not isinstance(value, _type):
            logging.warning(f'Metadata key "{key}" is not of type {_type}, got {type(value)}.')
            value = _type(value)

        item_schema = SETTINGS_SCHEMA['metadata']['item_schema']
        _validate_section('metadata', {**self.data['metadata'], key: value}, item_schema)
        self.data['metadata'][key] = value
        self.save_section('metadata')

    def load(self) -> Dict[str, Any]:
        """Load settings.json from disk and validate against schema.

        Returns:
            The loaded settings dictionary.

        Raises:
            status.SettingsNotFoundException: If settings.json is missing.
            status.SettingsInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.SettingsNotFoundException(str(self.settings_path))

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate(data)
        except (ValueError, TypeError) as ex:
            raise status.SettingsInvalidException(str(ex)) from ex

        self.data = data
        return self.data

    def validate(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Validate settings data against SETTINGS_SCHEMA.

        Args:
            data (dict, optional): Settings data to validate. Defaults to self.data.

        Raises:
            ValueError: If the data is empty or a required section or field is missing.
            TypeError: If a section or field has the wrong type.
        """
        if data is None:
            data = self.data
        if not data:
            raise ValueError('Settings data is empty.')

        logging.debug('Validating settings data against schema.')
        for section_name, specs in SETTINGS_SCHEMA.items():
            if specs.get('required') and section_name not in data:
                raise ValueError(f'Missing required section: {section_name}')
            if section_name not in data:
                continue
            if not isinstance(data[section_name], specs['type']):
                raise TypeError(
                    f'Section "{section_name}" must be {specs["type"]}, got {type(data[section_name])}.'
                )
            _validate_section(section_name, data[section_name], specs['item_schema'])

        logging.debug('Settings data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a settings section.

        Raises:
            KeyError: If section_name is not a known section.
        """
        if section_name not in SETTINGS_SCHEMA:
            raise KeyError(f'Unknown section: {section_name}')
        return self.data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace and persist a settings section.

        The previous section is restored if validation fails.

        Raises:
            ValueError: If section_name is unknown or the new data is invalid.
            TypeError: If the new data has wrong types.
        """
        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.data.get(section_name, {}).copy()

        self.data[section_name] = new_data
        try:
            self.validate()
            self.save_section(section_name)
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.data[section_name] = current_section_data
            raise

    def revert_section(self, section_name: str) -> None:
        """Revert a settings section to its template default and save.

        Raises:
            ValueError: If section_name is unknown.
        """
        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        self.data[section_name] = template_data[section_name]
        self.save_section(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single settings section, leaving the rest of the file untouched.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.data[section_name]

        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)
        logging.debug(f'Saved section "{section_name}" to "{self.settings_path}"')
