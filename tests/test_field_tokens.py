import unittest

from field_tokens import (
    FieldDescriptor,
    Flag,
    ForeignKeyRef,
    IndexOnly,
    OtherType,
    StorageClass,
    is_type_token,
    lookup_action,
    parse_field_token,
    resolve_flags,
    resolve_type,
    split_top_level,
)
from schema_errors import InvalidConstraint, MalformedFieldSpec


class TestTypeAliases(unittest.TestCase):
    def test_aliases_resolve_case_insensitively(self) -> None:
        cases = {
            "int": StorageClass.INTEGER,
            "Integer": StorageClass.INTEGER,
            "BOOL": StorageClass.INTEGER,
            "string": StorageClass.TEXT,
            "datetime": StorageClass.TEXT,
            "timestamp": StorageClass.TEXT,
            "float": StorageClass.REAL,
            "real": StorageClass.REAL,
            "number": StorageClass.NUMERIC,
            "numeric": StorageClass.NUMERIC,
            "blob": StorageClass.BLOB,
        }
        for token, expected in cases.items():
            self.assertIs(resolve_type(token), expected, token)

    def test_unknown_type_passes_through_uppercased(self) -> None:
        self.assertEqual(resolve_type("varchar(255)"), OtherType("VARCHAR(255)"))
        self.assertEqual(resolve_type("jsonb").sql, "JSONB")

    def test_engine_specific_type_bodies(self) -> None:
        self.assertEqual(parse_field_token("body:varchar(max)").col_type, OtherType("VARCHAR(MAX)"))
        self.assertEqual(parse_field_token("tags:text[]!").col_type, OtherType("TEXT[]"))
        field = parse_field_token("kind:enum('Draft','live')!,default='live'")
        self.assertEqual(field.col_type, OtherType("ENUM('Draft','live')"))
        self.assertEqual(field.flags, {Flag.NOT_NULL})
        self.assertEqual(field.default, "'live'")

    def test_type_token_shapes(self) -> None:
        for text in ("int", "double precision", "varchar(max)", "text[]", "enum('a,b', 'c')", "decimal(10, 2)"):
            self.assertTrue(is_type_token(text), text)
        for text in ("", "1int", "a:b", "int>x", "text!", "(int)", "varchar(10", "int)", "enum('a)"):
            self.assertFalse(is_type_token(text), text)


class TestFieldTokenParser(unittest.TestCase):
    def test_bare_name_defaults_to_text(self) -> None:
        field = parse_field_token("title")
        self.assertEqual(field, FieldDescriptor(name="title", col_type=StorageClass.TEXT))

    def test_short_flags_on_type_segment(self) -> None:
        field = parse_field_token("email:text!+")
        self.assertEqual(field.name, "email")
        self.assertIs(field.col_type, StorageClass.TEXT)
        self.assertEqual(field.flags, {Flag.NOT_NULL, Flag.UNIQUE})

    def test_short_flags_on_name_and_type_are_unioned(self) -> None:
        field = parse_field_token("code!:text^")
        self.assertEqual(field.name, "code")
        self.assertEqual(field.flags, {Flag.NOT_NULL, Flag.INDEX})

    def test_short_flags_on_bare_name(self) -> None:
        field = parse_field_token("title!")
        self.assertEqual(field.name, "title")
        self.assertEqual(field.flags, {Flag.NOT_NULL})

    def test_primary_key_autoincrement(self) -> None:
        field = parse_field_token("row_id:int#~")
        self.assertIs(field.col_type, StorageClass.INTEGER)
        self.assertEqual(field.flags, {Flag.PRIMARY_KEY, Flag.AUTOINCREMENT})

    def test_long_attributes(self) -> None:
        field = parse_field_token("slug:text,Unique,NN,idx")
        self.assertEqual(field.flags, {Flag.UNIQUE, Flag.NOT_NULL, Flag.INDEX})

    def test_symbolic_long_attributes(self) -> None:
        field = parse_field_token("n:int,!,+,#")
        self.assertEqual(field.flags, {Flag.NOT_NULL, Flag.UNIQUE, Flag.PRIMARY_KEY})

    def test_default_spellings(self) -> None:
        self.assertEqual(parse_field_token("age:int,default=0").default, "0")
        self.assertEqual(parse_field_token("age:int,def=1").default, "1")
        self.assertEqual(parse_field_token("age:int,=2").default, "2")

    def test_default_keeps_commas_inside_parentheses(self) -> None:
        field = parse_field_token("ts:int,default=(strftime('%s','now')),notnull")
        self.assertEqual(field.default, "(strftime('%s','now'))")
        self.assertEqual(field.flags, {Flag.NOT_NULL})

    def test_sized_type_keeps_its_comma(self) -> None:
        field = parse_field_token("price:numeric(10,2)!")
        self.assertEqual(field.col_type, OtherType("NUMERIC(10,2)"))
        self.assertEqual(field.flags, {Flag.NOT_NULL})

    def test_index_only_directive(self) -> None:
        self.assertEqual(parse_field_token("^email"), IndexOnly(column="email"))

    def test_fk_shorthand_defaults_to_integer_and_id(self) -> None:
        field = parse_field_token("org_id->orgs")
        self.assertIs(field.col_type, StorageClass.INTEGER)
        self.assertEqual(field.fk, ForeignKeyRef(table="orgs", column="id"))

    def test_fk_shorthand_keeps_declared_type(self) -> None:
        field = parse_field_token("user_id:text->users")
        self.assertIs(field.col_type, StorageClass.TEXT)
        self.assertEqual(field.fk, ForeignKeyRef(table="users"))

    def test_fk_shorthand_with_column_and_bare_arrow(self) -> None:
        field = parse_field_token("owner:string!>people(uid)")
        self.assertIs(field.col_type, StorageClass.TEXT)
        self.assertEqual(field.flags, {Flag.NOT_NULL})
        self.assertEqual(field.fk, ForeignKeyRef(table="people", column="uid"))

    def test_fk_scoped_attributes(self) -> None:
        field = parse_field_token("user_id->users,ondelete=set_null,onupdate=cascade,defer")
        self.assertEqual(
            field.fk,
            ForeignKeyRef(table="users", on_delete="setnull", on_update="cascade", deferred=True),
        )

    def test_inline_fk_type(self) -> None:
        field = parse_field_token("author:fk(users.id)!,ondelete=cascade")
        self.assertIs(field.col_type, StorageClass.INTEGER)
        self.assertEqual(field.flags, {Flag.NOT_NULL})
        self.assertEqual(field.fk, ForeignKeyRef(table="users", column="id", on_delete="cascade"))

    def test_arrow_inside_default_is_not_a_foreign_key(self) -> None:
        field = parse_field_token("flag:int,default=(1>0)")
        self.assertIsNone(field.fk)
        self.assertEqual(field.default, "(1>0)")


class TestFieldTokenErrors(unittest.TestCase):
    def test_unknown_attribute(self) -> None:
        with self.assertRaises(MalformedFieldSpec):
            parse_field_token("name:text,bogus")

    def test_malformed_fk_target(self) -> None:
        for token in ("user_id->", "user_id->users(", "user_id->us-ers", "user_id->users(id)x"):
            with self.assertRaises(MalformedFieldSpec, msg=token):
                parse_field_token(token)

    def test_invalid_names(self) -> None:
        for token in ("", "   ", "1abc", ":text", "na-me", "^"):
            with self.assertRaises(MalformedFieldSpec, msg=token):
                parse_field_token(token)

    def test_malformed_types(self) -> None:
        for token in ("a:b:c", "n:varchar(10", "n:int)", "n:(int)"):
            with self.assertRaises(MalformedFieldSpec, msg=token):
                parse_field_token(token)

    def test_unknown_action(self) -> None:
        with self.assertRaises(MalformedFieldSpec):
            parse_field_token("user_id->users,ondelete=explode")

    def test_fk_attribute_without_fk(self) -> None:
        with self.assertRaises(InvalidConstraint):
            parse_field_token("name:text,ondelete=cascade")
        with self.assertRaises(InvalidConstraint):
            parse_field_token("name:text,deferrable")

    def test_autoincrement_requires_integer_primary_key(self) -> None:
        for token in ("n:int~", "n:text#~", "n,ai"):
            with self.assertRaises(InvalidConstraint, msg=token):
                parse_field_token(token)


class TestHelpers(unittest.TestCase):
    def test_split_top_level(self) -> None:
        self.assertEqual(
            split_top_level("a:numeric(10,2),default='x,y',u"),
            ["a:numeric(10,2)", "default='x,y'", "u"],
        )

    def test_lookup_action(self) -> None:
        self.assertEqual(lookup_action("SET NULL"), "setnull")
        self.assertEqual(lookup_action("no-action"), "noaction")
        self.assertIsNone(lookup_action("explode"))

    def test_resolve_flags_unions_sets(self) -> None:
        flags = resolve_flags("id", StorageClass.INTEGER, {Flag.PRIMARY_KEY}, [Flag.AUTOINCREMENT, Flag.PRIMARY_KEY])
        self.assertEqual(flags, frozenset({Flag.PRIMARY_KEY, Flag.AUTOINCREMENT}))


if __name__ == "__main__":
    unittest.main()
