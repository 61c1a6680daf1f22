from nicegui import ui

from ch_workbench.config import ConnectionConfig

PORT_DEFAULTS = {
    ("native", False): 9000,
    ("native", True): 9440,
    ("http", False): 8123,
    ("http", True): 8443,
}


def connection_dialog(on_save, existing: ConnectionConfig | None = None):
    """Open a dialog to create or edit a server entry.

    Args:
        on_save: Callback receiving the new ConnectionConfig (may be async).
        existing: If provided, pre-fill the form for editing.
    """
    with ui.dialog() as dialog, ui.card().classes('w-96'):
        ui.label('Edit Server' if existing else 'New Server').classes('text-h6 q-mb-sm')

        label_input = ui.input('Label', value=existing.label if existing else '').classes('w-full')
        host_input = ui.input('Host', value=existing.host if existing else 'localhost').classes('w-full')
        port_input = ui.number('Port', value=existing.port if existing else 9000, format='%d').classes('w-full')
        user_input = ui.input('User', value=existing.user if existing else 'default').classes('w-full')
        password_input = ui.input(
            'Password',
            value=existing.password if existing else '',
            password=True,
            password_toggle_button=True,
        ).classes('w-full')
        tags_input = ui.input(
            'Tags',
            value=existing.tags if existing else '',
            placeholder='dev,quant,tca',
        ).classes('w-full')

        protocol_select = ui.select(
            {'native': 'Native (TCP)', 'http': 'HTTP'},
            value=existing.protocol if existing else 'native',
            label='Protocol',
        ).classes('w-full')
        ssl_switch = ui.switch('SSL / TLS', value=existing.secure if existing else False)

        def _update_port(_=None):
            port_input.value = PORT_DEFAULTS.get((protocol_select.value, ssl_switch.value), 9000)

        protocol_select.on_value_change(_update_port)
        ssl_switch.on_value_change(_update_port)

        with ui.row().classes('w-full justify-end q-mt-md gap-2'):
            ui.button('Cancel', on_click=dialog.close).props('flat')

            async def handle_save():
                if not label_input.value or not host_input.value:
                    ui.notify('Label and Host are required', type='warning')
                    return
                cfg = ConnectionConfig(
                    label=label_input.value.strip(),
                    host=host_input.value.strip(),
                    port=int(port_input.value or 9000),
                    user=user_input.value.strip(),
                    password=password_input.value or '',
                    tags=(tags_input.value or '').strip(),
                    protocol=protocol_select.value,
                    secure=ssl_switch.value,
                )
                dialog.close()
                await on_save(cfg)

            ui.button('Save', on_click=handle_save).props('color=primary')

    dialog.open()


def path_dialog(title: str, on_submit, default: str = 'servers.json'):
    """Ask for a server-side file path (used by import/export)."""
    with ui.dialog() as dialog, ui.card().classes('w-96'):
        ui.label(title).classes('text-h6 q-mb-sm')
        path_input = ui.input('File path', value=default).classes('w-full')
        with ui.row().classes('w-full justify-end q-mt-md gap-2'):
            ui.button('Cancel', on_click=dialog.close).props('flat')

            async def handle_ok():
                path = (path_input.value or '').strip()
                if not path:
                    ui.notify('File path is required', type='warning')
                    return
                dialog.close()
                await on_submit(path)

            ui.button('OK', on_click=handle_ok).props('color=primary')

    dialog.open()
