# Table provisioning
#
# Builds the sqlalchemy tables of the registered resources.
# Columns used for filtering (own and cross-table search fields) are created with an index.
#
import sqlalchemy as sa
import relgraph
from .descriptors import ManyToMany

COLUMN_TYPES = {
    "string": sa.String,
    "text": sa.Text,
    "number": sa.Float,
    "integer": sa.Integer,
    "id": sa.Integer,
    "boolean": sa.Boolean,
    "date": sa.Date,
    "datetime": sa.DateTime,
    "decimal": sa.Numeric,
    "json": sa.JSON,
}


def column_type(field_type):
    return COLUMN_TYPES.get(field_type, sa.String)()


def required_indexes(registry):
    """
    :return: set of (table, column) that need an index
    """
    result = set()
    for type_name in registry.type_names:
        descriptor = registry.compile(type_name)
        for column in descriptor.indexed_columns:
            result.add((descriptor.table_name, column))
        result.update(registry.graph.analyze_required_indexes(type_name))
    return result


def build_metadata(registry, metadata=None):
    """
    Create the tables of all registered resources, and the pivot tables that aren't registered as a resource

    :param registry: ResourceRegistry
    :param metadata: sqlalchemy MetaData, a new one is created if not supplied
    :return: metadata
    """
    if metadata is None:
        metadata = sa.MetaData()
    indexes = required_indexes(registry)
    pivots = {}

    for type_name in registry.type_names:
        descriptor = registry.compile(type_name)
        table = descriptor.table_name
        columns = []
        for name, fdesc in descriptor.fields.items():
            args = [name, column_type(fdesc.type)]
            if fdesc.belongs_to:
                target = registry.compile(fdesc.belongs_to)
                args.append(sa.ForeignKey(f"{target.table_name}.{target.id_field}"))
            if name == descriptor.id_field:
                columns.append(sa.Column(*args, primary_key=True))
            else:
                columns.append(sa.Column(*args, index=(table, name) in indexes, nullable=True))
        sa.Table(table, metadata, *columns)

        for rel in descriptor.relationships.values():
            if isinstance(rel, ManyToMany) and rel.through not in registry:
                target = registry.compile(rel.target_type)
                pivot = pivots.setdefault(rel.through, {})
                pivot.setdefault(rel.own_key, (descriptor.table_name, descriptor.id_field))
                pivot.setdefault(rel.other_key, (target.table_name, target.id_field))

    for through, keys in pivots.items():
        if through in metadata.tables:
            continue
        columns = [sa.Column("id", sa.Integer, primary_key=True)]
        for key, (target_table, target_id) in keys.items():
            columns.append(sa.Column(key, sa.Integer, sa.ForeignKey(f"{target_table}.{target_id}"), index=True, nullable=False))
        sa.Table(through, metadata, *columns)
        relgraph.log.debug(f"pivot table {through}: {list(keys)}")

    return metadata
