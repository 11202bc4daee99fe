"""
CLI メインモジュール

devcontainerテンプレート・フィーチャー管理ツールのコマンドラインインターフェースを提供します。
"""

from __future__ import annotations

import functools
import logging
import sys
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Optional, TypeVar

import click
from pydantic import ValidationError
from rich.json import JSON
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .assembler import SCRATCH_REFERENCE, assemble, create_scratch_template
from .cache import ArtifactCache
from .errors import CommentsUnsupportedError, DevcontainerTemplatesError, IndexMissingError
from .index import CollectionIndex, IndexStore, normalize_id
from .models import Collection, Feature, IndexEntry
from .oci_ref import OciReference
from .registry import HttpRegistryClient
from .search import SearchField, SearchResult, search
from .settings import APP_NAME, Settings
from .utils import console, err_console, find_devcontainer_json, parse_assignments, write_configuration

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _registry_client(settings: Settings) -> HttpRegistryClient:
    return HttpRegistryClient(timeout=settings.timeout, max_retries=settings.max_retries)


def handle_errors(func: F) -> F:
    """
    コアの例外をメッセージと終了コードに変換するデコレータ。

    例外の種類ごとに異なる終了コードで終了する。
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except IndexMissingError as e:
            err_console.print(f"[bold red]✗ {escape(str(e))}[/bold red]")
            err_console.print(f"[yellow]Run `{APP_NAME} pull-index` to download it.[/yellow]")
            sys.exit(e.exit_code)
        except CommentsUnsupportedError as e:
            err_console.print(f"[bold red]✗ {escape(str(e))}[/bold red]")
            err_console.print("[yellow]Re-run with -r/--remove-comments to drop the template's comments.[/yellow]")
            sys.exit(e.exit_code)
        except DevcontainerTemplatesError as e:
            err_console.print(f"[bold red]✗ {escape(str(e))}[/bold red]")
            sys.exit(e.exit_code)

    return wrapper  # type: ignore[return-value]


def _load_index(settings: Settings) -> CollectionIndex:
    return IndexStore(settings.index_path).index


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", count=True, help="ログを詳細に表示（-vv でデバッグ）")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="インデックスとキャッシュを保存するディレクトリ",
)
@click.pass_context
def cli(ctx: click.Context, verbose: int, data_dir: Optional[Path]) -> None:
    """
    devcontainerテンプレート・フィーチャー管理ツール

    OCIレジストリで公開されているテンプレートとフィーチャーを検索し、
    devcontainer.json を組み立てます。
    """
    _configure_logging(verbose)
    try:
        settings = Settings.from_environment()
    except ValidationError as e:
        raise click.ClickException(f"Invalid environment configuration: {e}") from e
    if data_dir is not None:
        settings = settings.model_copy(update={"data_dir": data_dir})
    ctx.obj = settings


@cli.command("pull-index")
@click.pass_obj
@handle_errors
def pull_index(settings: Settings) -> None:
    """テンプレート・フィーチャーのインデックスを取得する。"""
    with _registry_client(settings) as client:
        path = IndexStore(settings.index_path).refresh(client, settings.index_reference)
    console.print(f"[green]✓ Saved to {path}[/green]")


def _collection_overview(index: CollectionIndex) -> Table:
    table = Table(title="Collections")
    table.add_column("Name", style="cyan")
    table.add_column("OCI Reference")
    table.add_column("Features", justify="right")
    table.add_column("Templates", justify="right")
    for collection in index.collections:
        table.add_row(
            collection.source_information.name,
            collection.source_information.oci_reference,
            str(len(collection.features)),
            str(len(collection.templates)),
        )
    return table


def _collection_details(collection: Collection) -> Table:
    oci_reference = collection.source_information.oci_reference
    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Type")
    table.add_column("OCI Reference", style="cyan")
    table.add_column("Name", max_width=40)
    table.add_column("Description", max_width=75)
    entries: list[IndexEntry] = [*collection.features, *collection.templates]
    for i, entry in enumerate(entries, start=1):
        description = (entry.description or "").splitlines()
        table.add_row(
            str(i),
            entry.kind,
            entry.id.replace(oci_reference, "~"),
            escape(entry.name),
            escape(description[0]) if description else "",
        )
    return table


@cli.command("list")
@click.option("-C", "--collection-id", metavar="OCI_REF", help="指定したコレクションの内容を表示")
@click.pass_obj
@handle_errors
def list_collections(settings: Settings, collection_id: Optional[str]) -> None:
    """コレクションの一覧を表示する。"""
    index = _load_index(settings)

    if collection_id is None:
        console.print(_collection_overview(index))
        if index.last_updated is not None:
            console.print(f"[dim]Index updated: {index.last_updated:%Y-%m-%d %H:%M:%S %Z}[/dim]")
        return

    collection = index.get_collection(collection_id)
    if collection is None:
        console.print(f"[yellow]No collection found by the given OCI Reference: {collection_id}[/yellow]")
        sys.exit(1)

    info = collection.source_information
    console.print(f"Name:          {info.name}")
    console.print(f"Maintainer:    {info.maintainer}")
    console.print(f"Contact:       {info.contact}")
    console.print(f"Repository:    {info.repository}")
    console.print(f"OCI Reference: {info.oci_reference}")
    console.print(_collection_details(collection))


@cli.command("search")
@click.argument("value")
@click.option(
    "-c",
    "--collection",
    type=click.Choice(["templates", "features"]),
    default="templates",
    show_default=True,
    help="検索するセクション",
)
@click.option(
    "-d",
    "--display-as",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="表示形式",
)
@click.option(
    "-f",
    "--fields",
    type=click.Choice([f.value for f in SearchField]),
    multiple=True,
    help="検索対象のフィールド（既定: id, keywords, description）",
)
@click.option("--include-deprecated", is_flag=True, help="非推奨のエントリも表示")
@click.pass_obj
@handle_errors
def search_command(
    settings: Settings,
    value: str,
    collection: str,
    display_as: str,
    fields: tuple[str, ...],
    include_deprecated: bool,
) -> None:
    """テンプレートまたはフィーチャーの id, keywords, description を検索する。"""
    index = _load_index(settings)
    entries: Iterable[IndexEntry] = (
        index.iter_features() if collection == "features" else index.iter_templates()
    )
    matches = search(
        entries,
        value,
        [SearchField(f) for f in fields] if fields else None,
        include_deprecated=include_deprecated,
    )
    results = [SearchResult.from_entry(entry) for entry in matches]

    if display_as == "json":
        click.echo("[" + ",".join(r.model_dump_json() for r in results) + "]")
        return

    if not results:
        console.print("No results found")
        return

    table = Table()
    table.add_column("ID", style="cyan")
    table.add_column("Version")
    table.add_column("Name")
    for result in results:
        table.add_row(result.id, result.version, result.name)
    console.print(table)


@cli.command("inspect")
@click.argument("oci_ref", metavar="OCI_REF")
@click.option(
    "-d",
    "--display-as",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
    help="表示形式",
)
@click.pass_obj
@handle_errors
def inspect_command(settings: Settings, oci_ref: str, display_as: str) -> None:
    """テンプレートまたはフィーチャーの詳細を表示する。"""
    entry = _load_index(settings).find(oci_ref)

    if display_as == "json":
        click.echo(entry.model_dump_json(by_alias=True, exclude_none=True))
        return

    table = Table(title=f"{entry.name} ({entry.kind})")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("ID", entry.id)
    table.add_row("Version", entry.version)
    if entry.description:
        table.add_row("Description", escape(entry.description))
    if entry.keywords:
        table.add_row("Keywords", ", ".join(entry.keywords))
    if entry.documentation_url:
        table.add_row("Documentation", entry.documentation_url)
    if isinstance(entry, Feature) and entry.installs_after:
        table.add_row("Installs After", "\n".join(entry.installs_after))
    if entry.deprecated:
        table.add_row("Deprecated", "yes")
    console.print(table)

    if entry.options:
        options = Table(title="Options")
        options.add_column("Name", style="cyan")
        options.add_column("Schema")
        options.add_column("Description")
        for name, option in entry.options.items():
            options.add_row(name, escape(option.describe()), escape(option.description or ""))
        console.print(options)


def _feature_reference(raw: str, index: Optional[CollectionIndex]) -> OciReference:
    """
    フィーチャーの参照を解析する。

    タグが省略されていてインデックスにメジャーバージョンがあれば、それをタグとして使う。
    """
    ref = OciReference.parse(raw)
    tagless = ref.digest is None and ":" not in raw.rsplit("/", 1)[-1]
    if tagless and index is not None:
        feature = index.find_feature(ref)
        if feature is not None and feature.major_version:
            return ref.with_tag(feature.major_version)
    return ref


@cli.command("init")
@click.option("-t", "--template-id", metavar="OCI_REF", help="使用するテンプレートのOCI参照")
@click.option("-n", "--tag-name", help="テンプレートを取得するタグ（参照のタグを上書き）")
@click.option("--scratch", is_flag=True, help="組み込みの空のテンプレートから始める")
@click.option(
    "-f", "--include-features", "features", metavar="OCI_REF", multiple=True, help="追加するフィーチャー（複数指定可）"
)
@click.option(
    "-o", "--template-option", "template_option_values", multiple=True, help="テンプレートオプション (形式: NAME=VALUE)"
)
@click.option(
    "--feature-option",
    "feature_option_values",
    nargs=2,
    multiple=True,
    metavar="OCI_REF NAME=VALUE",
    help="フィーチャーオプション",
)
@click.option("-s", "--attempt-single-file", is_flag=True, help="image型テンプレートなら .devcontainer.json に出力")
@click.option("-r", "--remove-comments", is_flag=True, help="生成する devcontainer.json からコメントを削除")
@click.option(
    "-w",
    "--workspace-folder",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="出力先のワークスペースフォルダ",
)
@click.option("--force", is_flag=True, help="既存の devcontainer.json を上書き")
@click.option("--dry-run", is_flag=True, help="組み立てた設定を表示のみ（ファイルは書き込まない）")
@click.pass_obj
@handle_errors
def init(
    settings: Settings,
    template_id: Optional[str],
    tag_name: Optional[str],
    scratch: bool,
    features: tuple[str, ...],
    template_option_values: tuple[str, ...],
    feature_option_values: tuple[tuple[str, str], ...],
    attempt_single_file: bool,
    remove_comments: bool,
    workspace_folder: Optional[Path],
    force: bool,
    dry_run: bool,
) -> None:
    """
    テンプレートとフィーチャーから devcontainer.json を作成する。

    テンプレートとフィーチャーはOCIレジストリから取得してキャッシュします。
    """
    if scratch == (template_id is not None):
        raise click.UsageError("Specify exactly one of --template-id or --scratch")

    workspace = workspace_folder or Path.cwd()
    existing = find_devcontainer_json(workspace)
    if existing is not None and not force and not dry_run:
        console.print(f"[bold red]✗ {existing} already exists[/bold red] (use --force to overwrite)")
        sys.exit(1)

    try:
        template_options = parse_assignments(template_option_values)
        per_feature: dict[str, dict[str, str]] = {}
        for ref_value, assignment in feature_option_values:
            per_feature.setdefault(normalize_id(ref_value), {}).update(parse_assignments([assignment]))
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    try:
        index: Optional[CollectionIndex] = _load_index(settings)
    except IndexMissingError:
        logger.info("No local index; feature tags default to 'latest'")
        index = None

    feature_refs = [_feature_reference(raw, index) for raw in features]
    unknown = set(per_feature) - {ref.id for ref in feature_refs}
    if unknown:
        raise click.BadParameter(
            f"options given for features that are not included: {', '.join(sorted(unknown))}",
            param_hint="--feature-option",
        )

    with _registry_client(settings) as client:
        cache = ArtifactCache(settings.cache_dir, client)
        if template_id is None:
            template = cache.store_local(SCRATCH_REFERENCE, create_scratch_template())
        else:
            template_ref = OciReference.parse(template_id)
            if tag_name:
                template_ref = template_ref.with_tag(tag_name)
            if index is not None and index.find_template(template_ref) is None:
                logger.info("%s is not listed in the index", template_ref.id)
            template = cache.materialize(template_ref)
        feature_artifacts = cache.materialize_all(feature_refs)

    requests = [
        (artifact, per_feature.get(artifact.reference.id, {}))
        for artifact in feature_artifacts
        if artifact.reference is not None
    ]
    document = assemble(
        template,
        requests,
        attempt_single_file=attempt_single_file,
        remove_comments=remove_comments,
        template_options=template_options,
    )

    for warning in document.warnings:
        err_console.print(f"[yellow]WARNING: {escape(warning)}[/yellow]")

    if dry_run:
        console.print("\n[bold blue]🔍 Dry Run Mode - 設定確認のみ[/bold blue]")
        console.print(Panel(JSON.from_data(document.data), title="devcontainer.json"))
        for relative in document.files:
            console.print(f"📄 {relative}")
        return

    try:
        written = write_configuration(document, workspace)
    except OSError as e:
        console.print(f"[bold red]✗ Failed to write configuration: {e}[/bold red]")
        sys.exit(1)
    for path in written:
        console.print(f"[green]✓ Created {path}[/green]")


@cli.group("cache")
def cache_group() -> None:
    """アーティファクトキャッシュを管理する。"""


@cache_group.command("list")
@click.pass_obj
@handle_errors
def cache_list(settings: Settings) -> None:
    """キャッシュ済みのアーティファクトを表示する。"""
    entries = ArtifactCache(settings.cache_dir).entries()
    if not entries:
        console.print("Cache is empty")
        return
    table = Table(title="Cached Artifacts")
    table.add_column("Digest", style="cyan")
    table.add_column("Layers", justify="right")
    table.add_column("Path")
    for cached in entries:
        table.add_row(cached.digest[:19], str(len(cached.manifest.layers)), str(cached.local_path))
    console.print(table)


@cache_group.command("clear")
@click.pass_obj
@handle_errors
def cache_clear(settings: Settings) -> None:
    """キャッシュ済みのアーティファクトをすべて削除する。"""
    removed = ArtifactCache(settings.cache_dir).clear()
    console.print(f"[green]✓ Removed {removed} cached artifact(s)[/green]")


if __name__ == "__main__":
    cli()
