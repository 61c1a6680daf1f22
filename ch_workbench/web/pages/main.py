"""Single-page layout: Servers drawer | Query editor + Results | History."""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from nicegui import ui

import ch_workbench.web.state as state
from ch_workbench import events as ev
from ch_workbench.errors import QueryAborted, WorkbenchError
from ch_workbench.manager import QueryMode
from ch_workbench.web.components.connection_dialog import connection_dialog, path_dialog

_REFRESH_EVENTS = (
    ev.ACTIVE_CONNECTION_CHANGED,
    ev.QUERY_MODE_CHANGED,
    ev.QUERY_STARTED,
    ev.QUERY_FINISHED,
    ev.QUERY_ABORTED,
    ev.CONFIGS_CHANGED,
    ev.LIMIT_QUERY_CHANGED,
)


@dataclass
class PageContext:
    servers: ui.column
    results: ui.column
    history: ui.column
    status: ui.label
    query_input: ui.textarea


def _cell(v):
    if v is None or isinstance(v, (bool, int, float, str)):
        return v
    if isinstance(v, (date, datetime, Decimal)):
        return str(v)
    return repr(v)


# ── Servers ──

def _build_servers(ctx: PageContext):
    mgr = state.manager
    ctx.servers.clear()
    with ctx.servers:
        configs = mgr.configs
        if not configs:
            ui.label('No servers yet.').classes('text-grey-7')
            return
        connections = mgr.connections
        for cfg in configs:
            conn = connections.get(cfg.label)
            is_active = cfg.label == mgr.active_label
            card = ui.card().classes(
                f'w-full q-pa-xs q-mb-xs cursor-pointer {"bg-blue-1" if is_active else ""}'
            ).props('flat bordered')
            card.on('click', lambda c=cfg: _on_connect(c.label))
            with card:
                with ui.row().classes('items-center w-full justify-between no-wrap'):
                    with ui.column().classes('gap-0'):
                        ui.label(cfg.label).classes('text-weight-bold' if is_active else '')
                        ui.label(f'{cfg.host}:{cfg.port}').classes('text-caption text-grey-7')
                        if cfg.tag_list:
                            with ui.row().classes('gap-1'):
                                for tag in cfg.tag_list:
                                    ui.badge(tag).props('outline')
                        if conn is not None:
                            color = 'text-negative' if conn.failure_reason else 'text-green'
                            ui.label(conn.status.value).classes(f'text-caption {color}')
                    with ui.button(icon='more_vert').props('flat dense size=sm').on(
                        'click', js_handler='(e) => e.stopPropagation()'
                    ):
                        with ui.menu():
                            ui.menu_item('Edit', on_click=lambda c=cfg: _on_edit(c))
                            ui.menu_item('Disconnect', on_click=lambda c=cfg: _on_disconnect(c.label))
                            ui.menu_item('Delete', on_click=lambda c=cfg: _on_delete(c.label))


async def _on_connect(label: str):
    try:
        await state.manager.connect(label)
    except WorkbenchError as ex:
        ui.notify(f'Connection failed: {ex}', type='negative')


async def _on_disconnect(label: str):
    if not await state.manager.disconnect(label):
        ui.notify(f'"{label}" is not connected', type='info')


def _on_edit(cfg):
    async def save(new_cfg, old_label=cfg.label):
        try:
            await state.manager.update_cfg(old_label, new_cfg)
            ui.notify(f'Updated "{new_cfg.label}"', type='positive')
        except (WorkbenchError, ValueError) as ex:
            ui.notify(str(ex), type='negative')

    connection_dialog(on_save=save, existing=cfg)


def _on_add():
    async def save(cfg):
        try:
            replaced = await state.manager.add_cfg(cfg)
            ui.notify(f'{"Replaced" if replaced else "Added"} "{cfg.label}"', type='positive')
        except ValueError as ex:
            ui.notify(str(ex), type='negative')

    connection_dialog(on_save=save)


def _on_delete(label: str):
    with ui.dialog() as dialog, ui.card():
        ui.label(f'Remove server "{label}"?')
        with ui.row().classes('w-full justify-end gap-2'):
            ui.button('Cancel', on_click=dialog.close).props('flat')

            async def confirm():
                dialog.close()
                try:
                    await state.manager.remove_cfg(label)
                except WorkbenchError as ex:
                    ui.notify(str(ex), type='negative')

            ui.button('Remove', on_click=confirm).props('color=negative')
    dialog.open()


def _on_export():
    async def do_export(path):
        try:
            count = state.manager.export_cfg(path)
            ui.notify(f'Exported {count} server(s) to {path}', type='positive')
        except OSError as ex:
            ui.notify(f'Export failed: {ex}', type='negative')

    path_dialog('Export Servers', do_export)


def _on_import():
    async def do_import(path):
        try:
            count = await state.manager.import_cfg(path)
            ui.notify(f'Imported {count} server(s)', type='positive')
        except WorkbenchError as ex:
            ui.notify(f'Import rejected: {ex}', type='negative')

    path_dialog('Import Servers', do_import)


# ── Queries ──

async def _on_run(ctx: PageContext, query: str | None = None):
    query = query if query is not None else (ctx.query_input.value or '')
    if not query.strip():
        return
    try:
        result = await state.manager.sync(query)
    except QueryAborted:
        ui.notify('Query aborted', type='warning')
        return
    except WorkbenchError as ex:
        _render_error(ctx, ex)
        return
    _render_result(ctx, result)


async def _on_rerun(ctx: PageContext, record):
    try:
        result = await state.manager.rerun(record)
    except QueryAborted:
        ui.notify('Query aborted', type='warning')
        return
    except WorkbenchError as ex:
        _render_error(ctx, ex)
        return
    if result is not None:
        _render_result(ctx, result)


async def _on_abort():
    if not await state.manager.abort_query():
        ui.notify('No query is running', type='info')


def _render_error(ctx: PageContext, ex: Exception):
    ctx.results.clear()
    with ctx.results:
        ui.label(str(ex)).classes('text-negative text-mono')


def _render_result(ctx: PageContext, result):
    ctx.results.clear()
    rows = [{k: _cell(v) for k, v in row.items()} for row in result.rows]
    mode = state.manager.query_mode
    with ctx.results:
        summary = f'{result.label}: {len(rows)} row(s) in {result.elapsed:.2f}s'
        if result.truncated:
            summary += f' (showing {len(rows)} of {result.total_rows})'
        ui.label(summary).classes('text-caption text-grey-7')
        if mode is QueryMode.GRID:
            columns = [{'name': c, 'label': c, 'field': c, 'align': 'left', 'sortable': True}
                       for c in result.columns]
            ui.table(columns=columns, rows=rows).classes('w-full')
        elif mode is QueryMode.VIRTUALIZATION:
            ui.aggrid({
                'columnDefs': [{'field': c, 'filter': True} for c in result.columns],
                'rowData': rows,
            }).classes('w-full h-96')
        else:
            lines = [' | '.join(result.columns)]
            lines += [' | '.join(str(row.get(c)) for c in result.columns) for row in rows]
            ui.code('\n'.join(lines), language='text').classes('w-full')


def _build_history(ctx: PageContext):
    ctx.history.clear()
    with ctx.history:
        records = state.manager.history.records()
        if not records:
            ui.label('No queries yet.').classes('text-grey-7')
            return
        for record in reversed(records):
            color = 'text-negative' if record.failed else ''
            with ui.row().classes('items-center w-full no-wrap gap-2'):
                ui.button(icon='replay', on_click=lambda r=record: _on_rerun(ctx, r)).props('flat dense size=sm')
                ui.label(f'{record.timestamp:%H:%M:%S} {record.label}').classes('text-caption text-grey-7')
                ui.label(record.query.strip()[:120]).classes(f'text-mono ellipsis {color}')


# ── Page ──

@ui.page('/')
def main_page():
    mgr = state.manager
    settings = mgr.settings

    with ui.header().classes('items-center justify-between'):
        ui.label('ClickHouse Workbench').classes('text-h6 text-white')
        status = ui.label(mgr.status_text()).classes('text-white')

    with ui.left_drawer(value=True).classes('bg-grey-1') as drawer:
        with ui.row().classes('w-full items-center justify-between'):
            ui.label('Servers').classes('text-subtitle1 text-weight-bold')
            with ui.row().classes('gap-0'):
                ui.button(icon='add', on_click=_on_add).props('flat dense')
                ui.button(icon='file_upload', on_click=_on_import).props('flat dense')
                ui.button(icon='file_download', on_click=_on_export).props('flat dense')
        servers = ui.column().classes('w-full gap-0')

    with ui.column().classes('w-full'):
        query_input = ui.textarea(placeholder='SELECT 1').props('outlined autogrow').classes('w-full text-mono')
        with ui.row().classes('items-center gap-2'):
            ui.button('Run', icon='play_arrow', on_click=lambda: _on_run(ctx)).props('color=primary')
            ui.button('Abort', icon='stop', on_click=_on_abort).props('flat color=negative')
            ui.button(icon='menu', on_click=drawer.toggle).props('flat dense')
            ui.select(
                [m.value for m in QueryMode],
                value=mgr.query_mode.value,
                label='Query mode',
                on_change=lambda e: mgr.set_query_mode(e.value),
            ).classes('w-40')

            def on_limit_change(e):
                if e.value != mgr.limit_query_enabled:
                    mgr.toggle_limit_query()

            ui.switch('Limit query', value=mgr.limit_query_enabled, on_change=on_limit_change)
        results = ui.column().classes('w-full')

        with ui.expansion('History', icon='history').classes('w-full'):
            history = ui.column().classes('w-full gap-0')

        with ui.expansion('Source files', icon='folder').classes('w-full'):
            globs_input = ui.input('Globs pattern', value=settings.get('SOURCE_GLOBS_PATTERN')).classes('w-full')
            ignore_input = ui.input('Ignore pattern', value=settings.get('SOURCE_IGNORE_PATTERN')).classes('w-full')

            def save_scope():
                mgr.apply_setting('SOURCE_GLOBS_PATTERN', globs_input.value or '')
                mgr.apply_setting('SOURCE_IGNORE_PATTERN', ignore_input.value or '')
                ui.notify('Source file scope saved', type='positive')

            ui.button('Save', on_click=save_scope).props('flat color=primary')

    ctx = PageContext(servers=servers, results=results, history=history,
                      status=status, query_input=query_input)

    def refresh(**_):
        status.text = mgr.status_text()
        _build_servers(ctx)
        _build_history(ctx)

    unsubscribers = [mgr.events.subscribe(name, refresh) for name in _REFRESH_EVENTS]
    ui.context.client.on_disconnect(lambda: [unsub() for unsub in unsubscribers])
    refresh()
